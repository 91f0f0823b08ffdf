from __future__ import annotations

from typing import Any, Mapping, Optional

from llm_relay.core.errors import ValidationError
from llm_relay.core.routes import ModelCatalog, Route

MIN_PROMPT_LENGTH = 1
MAX_PROMPT_LENGTH = 10000


def validate_route(which: str, catalog: ModelCatalog) -> Route:
    route = catalog.parse(which or catalog.default_route)
    if route is None:
        raise ValidationError(
            "Invalid route. Must be one of: %s" % ", ".join(catalog.valid_keys()),
            "INVALID_ROUTE",
        )
    return route


def validate_prompt(body: Any) -> str:
    prompt = body.get("prompt") if isinstance(body, Mapping) else None

    if prompt is None:
        raise ValidationError("Prompt is required", "MISSING_PROMPT")
    if not isinstance(prompt, str):
        raise ValidationError("Prompt must be a string", "INVALID_PROMPT_TYPE")
    if len(prompt) < MIN_PROMPT_LENGTH:
        raise ValidationError(
            "Prompt must be at least %d character(s)" % MIN_PROMPT_LENGTH, "PROMPT_TOO_SHORT"
        )
    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValidationError(
            "Prompt too long (max %d characters)" % MAX_PROMPT_LENGTH, "PROMPT_TOO_LONG"
        )
    return prompt


def validate_timeout_ms(body: Any) -> Optional[float]:
    """
    Optional per-request timeout for the non-streaming endpoint, in milliseconds.
    """
    raw = body.get("timeout_ms") if isinstance(body, Mapping) else None
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw <= 0:
        raise ValidationError("timeout_ms must be a positive number", "INVALID_TIMEOUT")
    return float(raw)
