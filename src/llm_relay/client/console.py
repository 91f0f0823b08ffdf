from __future__ import annotations

import asyncio
import signal
from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from llm_relay.client.orchestrator import AttemptOrchestrator, TurnResult, TurnState
from llm_relay.client.state import ChatState, Message
from llm_relay.client.transport import RelayTransport
from llm_relay.config import ClientSettings
from llm_relay.core.errors import PlanExhausted, RelayError
from llm_relay.core.events import CHAT_CHUNK, TURN_NOTICE, Event
from llm_relay.core.logging import get_logger
from llm_relay.core.routes import FALLBACK_CATALOG, ModelCatalog, Route

HELP_TEXT = "Commands: /route <auto|fast|slow|key>, /timeouts <fast> <slow>, /clear, /quit. Ctrl-C stops a running reply."


async def load_catalog(transport: RelayTransport) -> ModelCatalog:
    log = get_logger(component="chat")
    try:
        return await transport.fetch_model_config()
    except Exception as e:
        log.warning("model_config_unavailable", error=str(e) or e.__class__.__name__, fallback=True)
        return FALLBACK_CATALOG


async def build_orchestrator(settings: ClientSettings) -> AttemptOrchestrator:
    transport = RelayTransport(base_url=settings.api_base_url)
    catalog = await load_catalog(transport)
    return AttemptOrchestrator(
        transport=transport,
        catalog=catalog,
        min_timeout_seconds=settings.min_timeout,
        state=ChatState(timeout_fast=settings.timeout_fast, timeout_slow=settings.timeout_slow),
    )


def attempts_table(message: Optional[Message]) -> Table:
    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("#")
    table.add_column("model")
    table.add_column("status")
    table.add_column("ttfb/elapsed")
    if message is None:
        return table
    for i, a in enumerate(message.attempts):
        color = {"success": "green", "running": "cyan", "timed_out": "yellow"}.get(a.status.value, "red")
        table.add_row(str(i), a.model, "[%s]%s[/%s]" % (color, a.status.value, color), "%.2fs" % a.elapsed)
    return table


class ChatConsole:
    """
    Terminal front end for one conversation: prompts, live fragments, notices.
    """

    def __init__(self, orchestrator: AttemptOrchestrator, *, route: Route, console: Optional[Console] = None) -> None:
        self._orch = orchestrator
        self.route = route
        self._console = console or Console()

    def attach(self) -> None:
        self._orch.events.subscribe(CHAT_CHUNK, self._on_chunk)
        self._orch.events.subscribe(TURN_NOTICE, self._on_notice)

    async def _on_chunk(self, event: Event) -> None:
        self._console.print(str(event.payload.get("fragment") or ""), end="", markup=False, highlight=False)

    async def _on_notice(self, event: Event) -> None:
        self._console.print("\n[yellow]%s[/yellow]" % escape(str(event.payload.get("text", ""))))

    async def ask(self, prompt: str) -> Optional[TurnResult]:
        loop = asyncio.get_running_loop()
        installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, self._orch.stop)
            installed = True
        except (NotImplementedError, RuntimeError):  # pragma: no cover (Windows / non-main thread)
            pass

        label = self._orch.catalog.route_key(self.route)
        self._console.print("[bold cyan]assistant (%s)>[/bold cyan] " % label, end="")
        try:
            result = await self._orch.submit(prompt, self.route)
        except PlanExhausted as e:
            self._console.print("\n[bold red]%s[/bold red]" % escape(str(e)))
            self._console.print(attempts_table(self._last_assistant()))
            return None
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

        self._console.print()
        if result.state is TurnState.USER_CANCELLED:
            self._console.print("[yellow]stopped[/yellow]")
        self._console.print(attempts_table(result.message))
        return result

    def _last_assistant(self) -> Optional[Message]:
        for m in reversed(self._orch.state.messages):
            if m.attempts:
                return m
        return None

    async def handle_command(self, line: str) -> bool:
        """Returns False when the session should end."""
        parts = line.strip().split()
        cmd = parts[0].lower()
        if cmd in ("/quit", "/exit"):
            return False
        if cmd == "/clear":
            await self._orch.clear()
            self._console.print("[dim]conversation cleared[/dim]")
        elif cmd == "/route" and len(parts) == 2:
            route = self._orch.catalog.parse(parts[1])
            if route is None:
                self._console.print("[red]unknown route %s[/red]" % escape(repr(parts[1])))
            elif route is not self.route:
                # Switching routes starts a fresh conversation.
                self.route = route
                await self._orch.clear()
                self._console.print("[dim]route set to %s[/dim]" % route.value)
        elif cmd == "/timeouts" and len(parts) == 3:
            try:
                await self._orch.set_timeouts(fast=float(parts[1]), slow=float(parts[2]))
            except ValueError:
                self._console.print("[red]timeouts must be numbers (seconds)[/red]")
        else:
            self._console.print(HELP_TEXT)
        return True

    async def run(self) -> None:
        self.attach()
        self._console.print("[dim]%s[/dim]" % HELP_TEXT)
        while True:
            try:
                line = await asyncio.to_thread(self._console.input, "[bold]you>[/bold] ")
            except (EOFError, KeyboardInterrupt):
                break
            if not line.strip():
                continue
            if line.startswith("/"):
                if not await self.handle_command(line):
                    break
                continue
            try:
                await self.ask(line)
            except RelayError as e:
                self._console.print("[red]%s[/red]" % escape(str(e)))
