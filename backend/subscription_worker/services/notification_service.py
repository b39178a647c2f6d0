"""Notification sink: persists notifications and publishes one event each."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_worker.connectors.pubsub_client import EventPublisher
from subscription_worker.db.models import Notification
from subscription_worker.schemas.analysis import AnalysisMatch
from subscription_worker.utils.metrics import record_publish_failure

logger = logging.getLogger("subworker.services.notifications")

_TITLE_MAX_CHARS = 80
_TITLE_COLUMN_MAX = 512


@dataclass
class NotificationDraft:
    user_id: str
    subscription_id: str
    title: str
    content: str = ""
    source_url: str | None = None
    metadata: dict[str, Any] | None = None
    entity_type: str | None = None
    type_slug: str | None = None
    trace_id: str | None = None


@dataclass
class NotificationBatch:
    created: list[Notification] = field(default_factory=list)
    errors: int = 0


def derive_entity_type(document_type: str | None, type_slug: str | None = None) -> str:
    """``"{type}:{document_type}"``, e.g. ``boe:resolucion``."""
    doc = (document_type or "").strip().lower() or "document"
    return f"{type_slug.lower()}:{doc}" if type_slug else doc


def build_notification_title(match: AnalysisMatch) -> str:
    candidate = (match.notification_title or "").strip()
    if len(candidate) > 3 and candidate.lower() != "string":
        return candidate[:_TITLE_COLUMN_MAX]

    title = (match.title or "").strip()
    if title:
        if len(title) > _TITLE_MAX_CHARS:
            return title[: _TITLE_MAX_CHARS - 3] + "..."
        return title

    issuer = match.issuing_body or "Organismo desconocido"
    return f"{match.document_type} de {issuer} ({match.publication_date or 'sin fecha'})"


def build_draft(
    *,
    user_id: str,
    subscription_id: str,
    match: AnalysisMatch,
    type_slug: str | None,
    trace_id: str | None = None,
) -> NotificationDraft:
    """Turn one analysis match into a notification draft."""
    return NotificationDraft(
        user_id=user_id,
        subscription_id=subscription_id,
        title=build_notification_title(match),
        content=match.summary,
        source_url=match.html_url,
        metadata={
            "prompt": match.prompt,
            "relevance": match.relevance_score,
            "document_type": match.document_type,
            "original_title": match.title,
            "publication_date": match.publication_date,
            "issuing_body": match.issuing_body,
            "section": match.section,
            "department": match.department,
            "links": match.links,
            "trace_id": trace_id,
        },
        entity_type=derive_entity_type(match.document_type, type_slug),
        type_slug=type_slug,
        trace_id=trace_id,
    )


def event_payload(notification: Notification, trace_id: str | None = None) -> dict[str, Any]:
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "subscription_id": notification.subscription_id,
        "title": notification.title,
        "content": notification.content,
        "entity_type": notification.entity_type,
        "source_url": notification.source_url,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
        "trace_id": trace_id,
    }


class NotificationSink:
    """Appends notification rows; publishes an event per row when a publisher is set."""

    def __init__(self, publisher: EventPublisher | None = None, topic: str = "processor-results"):
        self.publisher = publisher
        self.topic = topic

    async def create(self, db: AsyncSession, draft: NotificationDraft) -> Notification:
        """Insert one notification in its own SAVEPOINT, then publish (best-effort)."""
        meta = dict(draft.metadata or {})
        entity_type = draft.entity_type or derive_entity_type(meta.get("document_type"), draft.type_slug)

        async with db.begin_nested():
            notification = Notification(
                user_id=draft.user_id,
                subscription_id=draft.subscription_id,
                title=draft.title,
                content=draft.content or "",
                source_url=draft.source_url or "",
                meta=meta,
                entity_type=entity_type,
            )
            db.add(notification)

        await self._publish(notification, draft.trace_id)
        return notification

    async def create_many(self, db: AsyncSession, drafts: list[NotificationDraft]) -> NotificationBatch:
        """Insert every draft; insert failures are logged and counted, never raised."""
        batch = NotificationBatch()
        for draft in drafts:
            try:
                batch.created.append(await self.create(db, draft))
            except SQLAlchemyError as exc:
                batch.errors += 1
                logger.error(
                    "Failed to create notification for subscription %s (%r): %s",
                    draft.subscription_id, draft.title, exc,
                )
        return batch

    async def _publish(self, notification: Notification, trace_id: str | None) -> None:
        if self.publisher is None:
            return
        try:
            message_id = await self.publisher.publish(self.topic, event_payload(notification, trace_id))
            logger.debug("Published notification %s as message %s", notification.id, message_id)
        except Exception as exc:
            record_publish_failure(self.topic)
            logger.warning("Failed to publish notification %s to %s: %s", notification.id, self.topic, exc)

    async def close(self) -> None:
        if self.publisher is not None:
            await self.publisher.close()
