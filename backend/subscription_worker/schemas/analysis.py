"""Pydantic models for the analysis service request/response contract."""

from __future__ import annotations

import datetime as dt
from typing import Any, Literal

from pydantic import BaseModel, Field

DEFAULT_TITLE = "Documento sin título"
DEFAULT_SUMMARY = "Sin contenido"
DEFAULT_DOCUMENT_TYPE = "generic"


class AnalysisRequest(BaseModel):
    prompts: list[str]
    user_id: str
    subscription_id: str
    limit: int = 5
    date: dt.date = Field(default_factory=dt.date.today)
    trace_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Body for ``POST /analyze-text``."""
        return {
            "texts": list(self.prompts),
            "metadata": {
                "user_id": self.user_id,
                "subscription_id": self.subscription_id,
            },
            "limit": self.limit,
            "date": self.date.isoformat(),
        }


class AnalysisMatch(BaseModel):
    """One document judged relevant to one prompt."""

    prompt: str = ""
    title: str = DEFAULT_TITLE
    notification_title: str | None = None
    summary: str = DEFAULT_SUMMARY
    relevance_score: float = 0.0
    document_type: str = DEFAULT_DOCUMENT_TYPE
    issuing_body: str | None = None
    department: str | None = None
    section: str | None = None
    publication_date: str | None = None
    links: dict[str, str] = Field(default_factory=dict)

    @property
    def html_url(self) -> str:
        return self.links.get("html", "")


class AnalysisResult(BaseModel):
    status: Literal["success", "error"]
    matches: list[AnalysisMatch] = Field(default_factory=list)
    query_date: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"
