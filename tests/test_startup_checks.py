from typing import List

import httpx
import pytest

from llm_relay.core.routes import ModelCatalog, ModelInfo
from llm_relay.startup.checks import CheckStatus, run_startup_checks

CATALOG = ModelCatalog(
    fast=ModelInfo(route="a", name="gemma3:1b", label="Fast model"),
    slow=ModelInfo(route="b", name="llama3.2", label="Slow model"),
)


class FakeBackend:
    base_url = "http://ollama.test"

    def __init__(self, models: List[str], error: Exception = None) -> None:
        self._models = models
        self._error = error

    async def list_models(self) -> List[str]:
        if self._error is not None:
            raise self._error
        return self._models


@pytest.mark.asyncio
async def test_all_models_installed() -> None:
    results = await run_startup_checks(backend=FakeBackend(["gemma3:1b", "llama3.2:latest"]), catalog=CATALOG)
    assert [(r.name, r.status) for r in results] == [
        ("backend_reachable", CheckStatus.OK),
        ("fast_model", CheckStatus.OK),
        ("slow_model", CheckStatus.OK),
    ]


@pytest.mark.asyncio
async def test_missing_model_warns() -> None:
    results = await run_startup_checks(backend=FakeBackend(["gemma3:1b"]), catalog=CATALOG)
    assert results[-1].status == CheckStatus.WARN
    assert "llama3.2" in results[-1].details


@pytest.mark.asyncio
async def test_unreachable_backend_fails() -> None:
    request = httpx.Request("GET", "http://ollama.test/api/tags")
    backend = FakeBackend([], error=httpx.ConnectError("refused", request=request))
    results = await run_startup_checks(backend=backend, catalog=CATALOG)
    assert len(results) == 1
    assert results[0].status == CheckStatus.FAIL
    assert "ConnectError: refused" in results[0].details
