from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from llm_relay.core.errors import BackendUnavailable
from llm_relay.core.logging import get_logger


class UpstreamStream:
    """
    An open streaming generation channel. Yields raw lines as the backend sends them.
    Owns its HTTP client and response; `aclose()` releases both and is safe to call twice.
    """

    def __init__(self, *, client: httpx.AsyncClient, response: httpx.Response, model: str) -> None:
        self._client = client
        self._response = response
        self.model = model
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def chunks(self) -> AsyncIterator[str]:
        async for line in self._response.aiter_lines():
            yield line

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


class OllamaClient:
    """
    Client for an Ollama-compatible /api/generate endpoint.
    One request per call: either a blocking generation or an open stream.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = float(timeout_seconds)
        self._transport = transport
        self._log = get_logger(component="ollama")

    @property
    def base_url(self) -> str:
        return self._base_url

    def _client(self, timeout: httpx.Timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def generate(self, *, model: str, prompt: str, timeout_seconds: Optional[float] = None) -> str:
        url = f"{self._base_url}/api/generate"
        payload: Dict[str, Any] = {"model": model, "prompt": prompt, "stream": False}
        timeout = httpx.Timeout(timeout_seconds if timeout_seconds is not None else self._timeout)
        try:
            async with self._client(timeout) as client:
                resp = await client.post(url, json=payload)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            raise BackendUnavailable(
                "Backend returned %d for %s" % (e.response.status_code, model),
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise BackendUnavailable(str(e) or e.__class__.__name__) from e
        except ValueError as e:
            raise BackendUnavailable("Backend returned invalid JSON") from e

        if not isinstance(data, dict):
            raise BackendUnavailable("Backend returned an unexpected payload")
        return str(data.get("response") or "")

    async def open_stream(self, *, model: str, prompt: str) -> UpstreamStream:
        """
        Open a streaming generation. Fails with BackendUnavailable before any byte is
        relayed, so callers can still answer with a plain error response.
        """
        url = f"{self._base_url}/api/generate"
        payload: Dict[str, Any] = {"model": model, "prompt": prompt, "stream": True}
        # Generation can legitimately pause between tokens; only bound connecting.
        client = self._client(httpx.Timeout(None, connect=self._timeout))
        try:
            request = client.build_request("POST", url, json=payload)
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            raise BackendUnavailable(str(e) or e.__class__.__name__) from e

        if response.status_code >= 400:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace").strip()
            finally:
                await response.aclose()
                await client.aclose()
            detail = (": %s" % body[:200]) if body else ""
            raise BackendUnavailable(
                "Backend returned %d for %s%s" % (response.status_code, model, detail),
                status_code=response.status_code,
            )

        self._log.info("stream_opened", model=model)
        return UpstreamStream(client=client, response=response, model=model)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential(min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def list_models(self) -> List[str]:
        """
        Returns model names from GET /api/tags.
        """
        url = f"{self._base_url}/api/tags"
        async with self._client(httpx.Timeout(self._timeout)) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            data = resp.json()
        items = (data or {}).get("models") or []
        # Ollama returns: {"models":[{"name":"gemma3:1b", ...}, ...]}
        return [str(m["name"]) for m in items if isinstance(m, dict) and m.get("name")]
