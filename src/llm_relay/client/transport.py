from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx

from llm_relay.core.errors import BackendUnavailable
from llm_relay.core.routes import ModelCatalog


@dataclass(frozen=True)
class StreamReply:
    # Resolved backend name from the relay's X-Model header ("" when absent).
    model: str
    chunks: AsyncIterator[str]


class RelayTransport:
    """
    Client side of the relay's HTTP contract.
    """

    def __init__(
        self,
        *,
        base_url: str,
        connect_timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._connect_timeout = float(connect_timeout_seconds)
        self._transport = transport

    @property
    def base_url(self) -> str:
        return self._base_url

    @asynccontextmanager
    async def stream(self, route_key: str, prompt: str) -> AsyncIterator[StreamReply]:
        """
        POST /ai-service/{route}/stream and expose the plain-text body as it arrives.
        Transport failures (connect errors, non-success status, broken body) surface as
        BackendUnavailable; cancellation propagates untouched.
        """
        url = f"{self._base_url}/ai-service/{route_key}/stream"
        # Per-attempt timeouts are owned by the orchestrator; only bound connecting here.
        timeout = httpx.Timeout(None, connect=self._connect_timeout)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                async with client.stream("POST", url, json={"prompt": prompt}) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise BackendUnavailable(
                            "Request failed (%d): %s" % (resp.status_code, body.strip()),
                            status_code=resp.status_code,
                        )
                    yield StreamReply(model=resp.headers.get("x-model", ""), chunks=resp.aiter_text())
        except httpx.HTTPError as e:
            raise BackendUnavailable(str(e) or e.__class__.__name__) from e

    async def fetch_model_config(self) -> ModelCatalog:
        url = f"{self._base_url}/config/models"
        async with httpx.AsyncClient(timeout=self._connect_timeout, transport=self._transport) as client:
            resp = await client.get(url)
            if resp.status_code >= 400:
                raise BackendUnavailable("Request failed (%d)" % resp.status_code, status_code=resp.status_code)
            data = resp.json()
        return ModelCatalog.from_dict(data if isinstance(data, dict) else {})
