import pytest

from llm_relay.config import ServerSettings
from llm_relay.core.errors import ValidationError
from llm_relay.core.routes import FALLBACK_CATALOG, PROMPT_LENGTH_THRESHOLD, Route
from llm_relay.server.validation import validate_prompt, validate_route


def test_parse_accepts_wire_keys_and_route_names() -> None:
    c = FALLBACK_CATALOG
    assert c.parse("A") is Route.FAST
    assert c.parse("slow") is Route.SLOW
    assert c.parse(" auto ") is Route.AUTO
    assert c.parse("c") is None
    assert c.parse("") is None


def test_resolve_for_prompt_uses_length_only_for_auto() -> None:
    c = FALLBACK_CATALOG
    assert c.resolve_for_prompt(Route.AUTO, "x" * PROMPT_LENGTH_THRESHOLD) is Route.FAST
    assert c.resolve_for_prompt(Route.AUTO, "x" * (PROMPT_LENGTH_THRESHOLD + 1)) is Route.SLOW
    assert c.resolve_for_prompt(Route.FAST, "x" * 1000) is Route.FAST


def test_route_other() -> None:
    assert Route.FAST.other() is Route.SLOW
    with pytest.raises(ValueError):
        Route.AUTO.other()


def test_validate_route_lists_valid_keys() -> None:
    with pytest.raises(ValidationError) as exc:
        validate_route("x", FALLBACK_CATALOG)
    assert exc.value.code == "INVALID_ROUTE"
    assert "a, b, auto" in exc.value.message


def test_validate_prompt_keeps_text_as_sent() -> None:
    assert validate_prompt({"prompt": "  hi  "}) == "  hi  "
    with pytest.raises(ValidationError):
        validate_prompt(["prompt"])


def test_server_settings_catalog() -> None:
    s = ServerSettings(
        OLLAMA_URL="'http://ollama:11434/'",
        MODEL_A="tiny",
        MODEL_B="big",
        FAST_ROUTE_KEY="F",
        OLLAMA_TIMEOUT_MS=0,
    )
    assert s.ollama_url == "http://ollama:11434"
    assert s.timeout_seconds == 0.001
    catalog = s.catalog()
    assert catalog.fast.route == "f"
    assert catalog.model_name(Route.SLOW) == "big"


def test_server_settings_rejects_auto_route_key() -> None:
    with pytest.raises(ValueError):
        ServerSettings(OLLAMA_URL="http://x", FAST_ROUTE_KEY="auto")
