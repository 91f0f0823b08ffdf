from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from time import perf_counter
from typing import Dict, List, Optional

import httpx

from llm_relay.core.logging import get_logger
from llm_relay.core.routes import ModelCatalog
from llm_relay.integrations.ollama import OllamaClient


class CheckStatus(str, Enum):
    OK = "ok"
    WARN = "warn"
    FAIL = "fail"


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: CheckStatus
    details: str


async def run_startup_checks(*, backend: OllamaClient, catalog: ModelCatalog) -> List[CheckResult]:
    """
    Runs fast preflight checks before the relay starts serving.
    Keep these checks quick and side-effect-free (no generation requests).
    """
    log = get_logger(component="startup_checks")
    results: List[CheckResult] = []

    reachable, models = await _check_backend(backend)
    results.append(reachable)
    if models is not None:
        for label, info in (("fast", catalog.fast), ("slow", catalog.slow)):
            results.append(_check_model_installed(label, info.name, models))

    counts: Dict[CheckStatus, int] = {s: sum(1 for r in results if r.status == s) for s in CheckStatus}
    log.info(
        "startup_checks_complete",
        ok=counts[CheckStatus.OK],
        warn=counts[CheckStatus.WARN],
        fail=counts[CheckStatus.FAIL],
    )
    for r in results:
        log.info("startup_check", name=r.name, status=r.status.value, details=r.details)

    return results


async def _check_backend(backend: OllamaClient) -> tuple[CheckResult, Optional[List[str]]]:
    name = "backend_reachable"
    start = perf_counter()
    try:
        models = await backend.list_models()
    except Exception as e:
        return (
            CheckResult(
                name=name,
                status=CheckStatus.FAIL,
                details="Failed to reach %s: %s" % (backend.base_url, _format_backend_error(e)),
            ),
            None,
        )
    latency_ms = int((perf_counter() - start) * 1000)

    # Speed gate for a metadata call; generation will be much slower than this.
    if latency_ms >= 2000:
        return (
            CheckResult(name=name, status=CheckStatus.WARN, details="Backend is slow (%dms)" % latency_ms),
            models,
        )
    return (
        CheckResult(name=name, status=CheckStatus.OK, details="Backend OK (%dms, %d models)" % (latency_ms, len(models))),
        models,
    )


def _check_model_installed(label: str, model: str, installed: List[str]) -> CheckResult:
    name = "%s_model" % label
    # Ollama lists "llama3.2:latest" for a bare "llama3.2".
    candidates = {model, "%s:latest" % model} if ":" not in model else {model}
    if candidates & set(installed):
        return CheckResult(name=name, status=CheckStatus.OK, details="%s is installed" % model)
    return CheckResult(
        name=name,
        status=CheckStatus.WARN,
        details="%s not listed by the backend (pull it before use)" % model,
    )


def _format_backend_error(err: Exception) -> str:
    """
    Include real HTTP status codes when available.
    """
    if isinstance(err, httpx.HTTPStatusError):
        status = err.response.status_code
        reason = err.response.reason_phrase
        url = str(err.request.url)
        body = ""
        try:
            txt = err.response.text or ""
            if txt:
                body = " body=%r" % (txt[:300],)
        except Exception:
            body = ""
        return "HTTP %d %s url=%s%s" % (status, reason, url, body)

    if isinstance(err, httpx.RequestError):
        # DNS/TLS/connect/timeout errors
        return "%s: %s" % (type(err).__name__, str(err))

    return "%s: %s" % (type(err).__name__, str(err) or "(no message)")
