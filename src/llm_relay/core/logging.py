from __future__ import annotations

import logging
from typing import Any, Dict

import structlog
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

# Field order for rendered lines; everything else follows alphabetically.
_PREFERRED_KEYS = ("component", "service", "route", "model", "attempt", "status", "details")

_EVENT_ICONS = {
    "relay_listening": "🚀",
    "stream_opened": "🟢",
    "attempt_started": "🟢",
    "first_byte": "⚡",
    "attempt_timed_out": "⏱️",
    "client_disconnected": "🛑",
    "turn_cancelled": "🛑",
    "startup_check": "🧪",
    "startup_checks_complete": "🧪",
}
_LEVEL_ICONS = {"critical": "❌", "error": "❌", "warning": "⚠️"}
_LEVEL_STYLES = {"critical": "bold red", "error": "bold red", "warning": "bold yellow"}


def configure_logging(level: str, *, stderr: bool = False) -> None:
    """
    Rich-rendered structlog output for the relay server and the chat client.

    The chat front end streams model text to stdout, so it logs with `stderr=True`
    to keep log lines out of the reply.
    """
    handler = RichHandler(
        console=Console(stderr=stderr),
        rich_tracebacks=True,
        markup=True,
        show_time=True,
        show_level=True,
        show_path=False,
    )
    logging.basicConfig(level=level.upper(), format="%(message)s", datefmt="[%X]", handlers=[handler], force=True)

    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _render,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level.upper())),
        cache_logger_on_first_use=True,
    )


def get_logger(**kwargs: Any) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger().bind(**kwargs)


def _render(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> str:  # pragma: no cover
    event = str(event_dict.pop("event", method_name))
    level = str(event_dict.pop("level", "")).lower()

    icon = _EVENT_ICONS.get(event) or _LEVEL_ICONS.get(level, "✅")
    style = _LEVEL_STYLES.get(level, "bold cyan")
    title = "[%s]%s %s[/%s]" % (style, icon, escape(event), style)

    keys = [k for k in _PREFERRED_KEYS if k in event_dict]
    keys += sorted(k for k in event_dict if k not in _PREFERRED_KEYS)
    parts = ["%s=%s" % (k, escape(_format_value(event_dict[k]))) for k in keys]
    return "%s  %s" % (title, " ".join(parts)) if parts else title


def _format_value(value: Any) -> str:
    # Timings are float seconds; three decimals is plenty to read.
    if isinstance(value, float):
        return "%.3f" % value
    return repr(value)
