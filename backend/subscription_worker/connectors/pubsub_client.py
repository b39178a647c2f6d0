"""Event publishers for created notifications.

The notification sink receives a publisher (or None) through its
constructor; nothing here is a process-wide client.
"""

from __future__ import annotations

import base64
import json
import logging
import uuid
from typing import Any, Protocol

import httpx

from subscription_worker.config import Settings, settings as default_settings
from subscription_worker.errors import PublishError

logger = logging.getLogger("subworker.connectors.pubsub")


class EventPublisher(Protocol):
    async def publish(self, topic: str, payload: dict[str, Any]) -> str: ...

    async def close(self) -> None: ...


class PubSubRestPublisher:
    """
    Google Cloud Pub/Sub publisher over the REST API.

      POST {api_url}/v1/projects/{project}/topics/{topic}:publish
      Body: {"messages": [{"data": "<base64 json>", "attributes": {...}}]}
      Response: {"messageIds": ["..."]}
    """

    def __init__(
        self,
        project_id: str,
        *,
        access_token: str | None = None,
        api_url: str = "https://pubsub.googleapis.com",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.project_id = project_id
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else None
        self._client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"), timeout=timeout, headers=headers, transport=transport
        )

    @staticmethod
    def _attributes(payload: dict[str, Any]) -> dict[str, str]:
        keys = ("entity_type", "subscription_id", "trace_id")
        return {k: str(payload[k]) for k in keys if payload.get(k)}

    async def publish(self, topic: str, payload: dict[str, Any]) -> str:
        data = base64.b64encode(json.dumps(payload, default=str).encode("utf-8")).decode("ascii")
        body = {"messages": [{"data": data, "attributes": self._attributes(payload)}]}
        path = f"/v1/projects/{self.project_id}/topics/{topic}:publish"
        try:
            resp = await self._client.post(path, json=body)
            resp.raise_for_status()
            message_ids = resp.json().get("messageIds") or []
        except httpx.HTTPStatusError as exc:
            raise PublishError(f"Pub/Sub publish to '{topic}' failed: HTTP {exc.response.status_code}") from exc
        except httpx.RequestError as exc:
            raise PublishError(f"Pub/Sub publish to '{topic}' failed: {exc}") from exc
        except ValueError as exc:
            raise PublishError(f"Pub/Sub publish to '{topic}' returned invalid JSON") from exc
        if not message_ids:
            raise PublishError(f"Pub/Sub publish to '{topic}' returned no message id")
        return str(message_ids[0])

    async def close(self) -> None:
        await self._client.aclose()


class LoggingPublisher:
    """Development publisher: logs each event instead of sending it."""

    async def publish(self, topic: str, payload: dict[str, Any]) -> str:
        message_id = f"local-{uuid.uuid4().hex[:12]}"
        logger.info("Event %s to %s: %s", message_id, topic, json.dumps(payload, default=str))
        return message_id

    async def close(self) -> None:
        return None


def build_publisher(cfg: Settings | None = None) -> EventPublisher | None:
    """Pick a publisher from settings; None means publishing is disabled."""
    cfg = cfg or default_settings
    if cfg.PUBSUB_ENABLED:
        if not cfg.PUBSUB_PROJECT_ID:
            logger.warning("PUBSUB_ENABLED is set but PUBSUB_PROJECT_ID is missing; publishing disabled")
            return None
        return PubSubRestPublisher(
            cfg.PUBSUB_PROJECT_ID,
            access_token=cfg.PUBSUB_ACCESS_TOKEN,
            api_url=cfg.PUBSUB_API_URL,
            timeout=cfg.PUBSUB_TIMEOUT_SECONDS,
        )
    if cfg.PUBSUB_LOG_ONLY:
        return LoggingPublisher()
    return None
