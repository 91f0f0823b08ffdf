from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from llm_relay.client.console import ChatConsole, build_orchestrator, load_catalog
from llm_relay.client.transport import RelayTransport
from llm_relay.config import AppSettings
from llm_relay.core.logging import configure_logging
from llm_relay.integrations.ollama import OllamaClient
from llm_relay.server.app import main as server_main
from llm_relay.startup.checks import CheckStatus, run_startup_checks

app = typer.Typer(no_args_is_help=True)


def _client_settings(
    base_url: Optional[str], timeout_fast: Optional[float], timeout_slow: Optional[float]
) -> AppSettings:
    settings = AppSettings()
    configure_logging(settings.log_level, stderr=True)
    if base_url:
        settings.client.api_base_url = base_url.rstrip("/")
    if timeout_fast is not None:
        settings.client.timeout_fast = float(timeout_fast)
    if timeout_slow is not None:
        settings.client.timeout_slow = float(timeout_slow)
    return settings


@app.command()
def serve() -> None:
    """Run the relay HTTP server (backend -> streaming text)."""
    raise SystemExit(server_main())


@app.command()
def chat(
    route: str = typer.Option("auto", "--route", help="Route: auto, fast, slow (or the server's route keys)"),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="Relay server URL (default: RELAY_API_BASE_URL)"),
    timeout_fast: Optional[float] = typer.Option(None, "--timeout-fast", help="Seconds before the fast model is abandoned"),
    timeout_slow: Optional[float] = typer.Option(None, "--timeout-slow", help="Seconds before the slow model is abandoned"),
) -> None:
    """Interactive chat against the relay, with automatic failover in auto mode."""
    settings = _client_settings(base_url, timeout_fast, timeout_slow)

    async def run() -> None:
        orch = await build_orchestrator(settings.client)
        selected = orch.catalog.parse(route)
        if selected is None:
            raise typer.BadParameter("unknown route %r" % route, param_hint="--route")
        await ChatConsole(orch, route=selected).run()

    asyncio.run(run())


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Prompt text"),
    route: str = typer.Option("auto", "--route", help="Route: auto, fast, slow (or the server's route keys)"),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="Relay server URL (default: RELAY_API_BASE_URL)"),
    timeout_fast: Optional[float] = typer.Option(None, "--timeout-fast", help="Seconds before the fast model is abandoned"),
    timeout_slow: Optional[float] = typer.Option(None, "--timeout-slow", help="Seconds before the slow model is abandoned"),
) -> None:
    """One turn: stream a single reply and print the attempt history."""
    settings = _client_settings(base_url, timeout_fast, timeout_slow)

    async def run() -> int:
        orch = await build_orchestrator(settings.client)
        selected = orch.catalog.parse(route)
        if selected is None:
            raise typer.BadParameter("unknown route %r" % route, param_hint="--route")
        console = ChatConsole(orch, route=selected)
        console.attach()
        result = await console.ask(prompt)
        return 0 if result is not None else 1

    raise SystemExit(asyncio.run(run()))


@app.command()
def models(
    base_url: Optional[str] = typer.Option(None, "--base-url", help="Relay server URL (default: RELAY_API_BASE_URL)"),
) -> None:
    """Show the relay's route -> model mapping."""
    settings = _client_settings(base_url, None, None)
    catalog = asyncio.run(load_catalog(RelayTransport(base_url=settings.client.api_base_url)))

    table = Table(title="default route: %s" % catalog.default_route)
    table.add_column("tier")
    table.add_column("route")
    table.add_column("model")
    table.add_column("label")
    for tier, info in (("fast", catalog.fast), ("slow", catalog.slow)):
        table.add_row(tier, info.route, info.name, info.label)
    Console().print(table)


@app.command()
def check() -> None:
    """Preflight: backend reachable and both configured models installed."""
    settings = AppSettings()
    configure_logging(settings.log_level)
    backend = OllamaClient(
        base_url=settings.server.ollama_url,
        timeout_seconds=settings.server.timeout_seconds,
    )
    results = asyncio.run(run_startup_checks(backend=backend, catalog=settings.server.catalog()))
    for r in results:
        typer.echo("%s | %s | %s" % (r.name, r.status.value, r.details))
    raise SystemExit(1 if any(r.status == CheckStatus.FAIL for r in results) else 0)


if __name__ == "__main__":
    app()
