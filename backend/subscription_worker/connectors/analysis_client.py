"""HTTP client for the external content-analysis (parser) services."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, Sequence

import httpx

from subscription_worker.errors import AnalysisTransportError
from subscription_worker.schemas.analysis import (
    DEFAULT_DOCUMENT_TYPE,
    DEFAULT_SUMMARY,
    DEFAULT_TITLE,
    AnalysisMatch,
    AnalysisRequest,
    AnalysisResult,
)

logger = logging.getLogger("subworker.connectors.analysis")

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _score(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def normalize_match(raw: Any, prompt: str, today: dt.date) -> AnalysisMatch | None:
    """Build an :class:`AnalysisMatch` from one raw entry, or None if unusable."""
    if not isinstance(raw, dict):
        return None
    dates = raw.get("dates") if isinstance(raw.get("dates"), dict) else {}
    links = raw.get("links") if isinstance(raw.get("links"), dict) else {}
    department = _text(raw.get("department"))
    return AnalysisMatch(
        prompt=_text(raw.get("prompt")) or prompt,
        title=_text(raw.get("title")) or DEFAULT_TITLE,
        notification_title=_text(raw.get("notification_title")),
        summary=_text(raw.get("summary")) or _text(raw.get("content")) or DEFAULT_SUMMARY,
        relevance_score=_score(raw.get("relevance_score")),
        document_type=_text(raw.get("document_type")) or DEFAULT_DOCUMENT_TYPE,
        issuing_body=_text(raw.get("issuing_body")) or department,
        department=department,
        section=_text(raw.get("section")),
        publication_date=(
            _text(dates.get("publication_date"))
            or _text(raw.get("publication_date"))
            or today.isoformat()
        ),
        links={k: str(v) for k, v in links.items() if v is not None},
    )


def parse_response(data: Any, prompts: Sequence[str], today: dt.date) -> AnalysisResult:
    """Normalize a service response into an :class:`AnalysisResult`.

    Two shapes are accepted: ``{status, entries: [...]}`` and the parser
    protocol ``{query_date, results: [{prompt, matches: [...]}]}``.  Anything
    that is not a success with a well-formed list yields zero matches.
    """
    if not isinstance(data, dict):
        return AnalysisResult(status="error", error="Response body is not a JSON object")

    status = data.get("status", "success")
    if status != "success":
        return AnalysisResult(status="error", error=_text(data.get("error")) or f"status={status}")

    pairs: list[tuple[Any, str]] = []
    if "entries" in data:
        entries = data["entries"]
        if not isinstance(entries, list):
            return AnalysisResult(status="error", error="'entries' is not a list")
        pairs = [(entry, "") for entry in entries]
    elif "results" in data:
        results = data["results"]
        if not isinstance(results, list):
            return AnalysisResult(status="error", error="'results' is not a list")
        for idx, result in enumerate(results):
            if not isinstance(result, dict) or not isinstance(result.get("matches"), list):
                continue
            prompt = _text(result.get("prompt")) or (prompts[idx] if idx < len(prompts) else "")
            pairs.extend((match, prompt) for match in result["matches"])
    else:
        return AnalysisResult(status="error", error="Response has no entries")

    matches: list[AnalysisMatch] = []
    skipped = 0
    for raw, prompt in pairs:
        match = normalize_match(raw, prompt, today)
        if match is None:
            skipped += 1
            continue
        matches.append(match)
    if skipped:
        logger.warning("Skipped %d malformed analysis entr(ies)", skipped)

    return AnalysisResult(
        status="success",
        matches=matches,
        query_date=_text(data.get("query_date")),
    )


class AnalysisClient:
    """
    Talks to one parser service over HTTP.

    Protocol contract:
      POST {base_url}/analyze-text
      Body: {
        "texts": ["prompt", ...],
        "metadata": {"user_id": "...", "subscription_id": "..."},
        "limit": 5,
        "date": "YYYY-MM-DD"
      }
      Response: {"status": "success", "entries": [...]}
             or {"query_date": "...", "results": [{"prompt": "...", "matches": [...]}]}

    Only transport failures raise (:class:`AnalysisTransportError`); an error
    status or a malformed body is reported as a zero-match result.
    """

    def __init__(
        self,
        service: str,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 30.0,
        endpoint: str = "/analyze-text",
        max_retries: int = 0,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.service = service
        self.base_url = base_url.rstrip("/")
        self.endpoint = endpoint
        self.timeout = timeout
        self.max_retries = max(0, max_retries)
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._api_key = api_key
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=transport)

    def _headers(self, request: AnalysisRequest) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if request.trace_id:
            headers["X-Trace-ID"] = request.trace_id
        return headers

    def _retry_delay(self, attempt: int) -> float:
        return min(self.retry_base_delay * (2 ** attempt), self.retry_max_delay)

    async def _post(self, request: AnalysisRequest) -> httpx.Response:
        payload = request.to_payload()
        headers = self._headers(request)
        attempt = 0
        while True:
            try:
                resp = await self._client.post(self.endpoint, json=payload, headers=headers)
                resp.raise_for_status()
                return resp
            except httpx.HTTPStatusError as exc:
                code = exc.response.status_code
                if code in _RETRYABLE_STATUS and attempt < self.max_retries:
                    reason = f"HTTP {code}"
                else:
                    raise AnalysisTransportError(self.service, f"HTTP {code}", status_code=code) from exc
            except httpx.TimeoutException as exc:
                if attempt >= self.max_retries:
                    raise AnalysisTransportError(
                        self.service, f"Request timed out after {self.timeout:g}s"
                    ) from exc
                reason = "timeout"
            except httpx.RequestError as exc:
                if attempt >= self.max_retries:
                    raise AnalysisTransportError(self.service, str(exc) or exc.__class__.__name__) from exc
                reason = exc.__class__.__name__

            delay = self._retry_delay(attempt)
            attempt += 1
            logger.warning(
                "Analysis call to %s failed (%s); retry %d/%d in %.1fs",
                self.service, reason, attempt, self.max_retries, delay,
            )
            await asyncio.sleep(delay)

    async def analyze(self, request: AnalysisRequest) -> AnalysisResult:
        logger.info(
            "Analysis call: %s prompts=%d subscription=%s",
            self.service, len(request.prompts), request.subscription_id,
        )
        resp = await self._post(request)
        try:
            data = resp.json()
        except ValueError:
            logger.warning("Analysis service %s returned a non-JSON body", self.service)
            return AnalysisResult(status="error", error="Response body is not valid JSON")

        result = parse_response(data, request.prompts, request.date)
        if not result.ok:
            logger.warning(
                "Analysis service %s reported no usable result for %s: %s",
                self.service, request.subscription_id, result.error,
            )
        return result

    async def close(self) -> None:
        await self._client.aclose()
