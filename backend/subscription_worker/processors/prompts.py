"""Prompt normalization for stored subscription prompts."""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

from subscription_worker.config import settings

logger = logging.getLogger("subworker.processors.prompts")

MIN_PROMPT_LENGTH = 3


def _coerce(raw: Any) -> list[Any]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return list(raw)
    if isinstance(raw, str):
        stripped = raw.strip()
        if stripped.startswith("["):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                return [raw]
            return parsed if isinstance(parsed, list) else [raw]
        return [raw]
    return []


def normalize_prompts(raw: Any, defaults: Sequence[str] | None = None) -> list[str]:
    """Return usable prompts from *raw*, or the default prompt set.

    Accepts a list, a JSON array string or a single string.  Non-strings are
    dropped, strings are trimmed, anything shorter than three characters is
    discarded and duplicates are removed in order.
    """
    prompts: list[str] = []
    for item in _coerce(raw):
        if not isinstance(item, str):
            continue
        text = item.strip()
        if len(text) >= MIN_PROMPT_LENGTH and text not in prompts:
            prompts.append(text)

    if prompts:
        return prompts

    fallback = list(defaults if defaults is not None else settings.DEFAULT_PROMPTS)
    logger.info("No usable prompts in %r, using defaults %s", raw, fallback)
    return fallback
