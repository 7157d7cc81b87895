"""Terminal interface for localchat.

Features:
- Streaming token output
- Slash commands for session management (/new, /switch, /delete, ...)
- Ctrl-C stops the reply being generated
"""

from __future__ import annotations

import asyncio
import signal

from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from localchat.config import ChatConfig, get_localchat_home
from localchat.core.errors import ChatError
from localchat.core.engine import ChatEngine
from localchat.core.types import GenerationState, Session

console = Console()


HELP_TEXT = """
**Slash Commands:**
- `/help` - Show this help message
- `/new [model]` - Start a new session
- `/sessions` - List sessions
- `/switch <id>` - Switch session (an id prefix is enough)
- `/delete <id>` - Delete a session
- `/model [name]` - Show or change the current session's model
- `/models` - List models installed on the server
- `/status` - Show server status
- `/stats` - Show token usage
- `/history` - Show the current session's messages
- `/quit` or `/exit` - Exit

Press **Ctrl-C** while a reply is streaming to stop it.
"""


class CLI:
    """Interactive chat loop."""

    def __init__(self, engine: ChatEngine, config: ChatConfig) -> None:
        self.engine = engine
        self.config = config

        history_dir = get_localchat_home() / "history"
        history_dir.mkdir(parents=True, exist_ok=True)
        self.prompt_session: PromptSession[str] = PromptSession(
            history=FileHistory(str(history_dir / "cli_input.txt")),
        )

    @property
    def sessions(self):
        return self.engine.sessions

    async def run(self) -> None:
        """Main CLI loop."""
        self._print_banner()

        with patch_stdout():
            while True:
                try:
                    user_input = await self.prompt_session.prompt_async("\n> ")
                except (EOFError, KeyboardInterrupt):
                    console.print("\n[dim]Goodbye![/dim]")
                    break

                user_input = user_input.strip()
                if not user_input:
                    continue

                if user_input.startswith("/"):
                    try:
                        should_continue = await self._handle_command(user_input)
                    except ChatError as e:
                        console.print(f"[red]Error: {escape(str(e))}[/red]")
                        continue
                    if not should_continue:
                        break
                    continue

                await self._process_message(user_input)

    async def _process_message(self, user_text: str) -> None:
        """Send a message and print the reply as it streams."""
        console.print()

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.engine.stop_generation)
            handler_installed = True
        except (NotImplementedError, RuntimeError):
            handler_installed = False  # Windows event loops

        try:
            result = await self.engine.send_message(user_text, on_fragment=_print_fragment)
        except ChatError as e:
            console.print(f"\n[red]Error: {escape(str(e))}[/red]")
            return
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)

        console.print()
        if result.state == GenerationState.CANCELLED:
            console.print("[yellow]Stopped[/yellow]")
        if result.error:
            console.print(f"[red]Error: {escape(result.error)}[/red]")

    def _find_session(self, prefix: str) -> Session | None:
        matches = [s for s in self.sessions.sessions if s.id.startswith(prefix)]
        if len(matches) == 1:
            return matches[0]
        if not matches:
            console.print(f"[red]No session matches '{prefix}'[/red]")
        else:
            console.print(f"[red]'{prefix}' is ambiguous ({len(matches)} sessions)[/red]")
        return None

    async def _handle_command(self, command: str) -> bool:
        """Handle a slash command. Returns False if should exit."""
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        if cmd in ("/quit", "/exit", "/q"):
            console.print("[dim]Goodbye![/dim]")
            return False

        elif cmd == "/help":
            console.print(Markdown(HELP_TEXT))

        elif cmd == "/new":
            session = await self.engine.create_session(arg or None)
            console.print(f"[green]New session {session.id[:8]} ({session.model})[/green]")

        elif cmd == "/sessions":
            self._print_sessions()

        elif cmd == "/switch":
            session = self._find_session(arg) if arg else None
            if session:
                self.engine.switch_session(session.id)
                console.print(f"[green]Switched to {session.name or session.id[:8]}[/green]")

        elif cmd == "/delete":
            session = self._find_session(arg) if arg else None
            if session:
                await self.engine.delete_session(session.id)
                console.print(f"[green]Deleted {session.name or session.id[:8]}[/green]")
                if self.sessions.current_session is None:
                    await self.engine.create_session()

        elif cmd == "/model":
            current = self.sessions.current_session
            if current is None:
                console.print("[red]No active session[/red]")
            elif arg:
                await self.sessions.set_session_model(current.id, arg)
                console.print(f"[green]Model switched to: {arg}[/green]")
            else:
                console.print(f"[blue]Current model: {current.model}[/blue]")

        elif cmd == "/models":
            models = await self.engine.client.list_models()
            if not models:
                console.print("[dim]No models installed[/dim]")
            for name in models:
                console.print(f"  {name}")

        elif cmd == "/status":
            status = await self.engine.client.check_status()
            if status["is_responding"]:
                console.print(
                    f"[green]Server is up[/green] ({len(status['models'])} models, "
                    f"default {status['default_model']})"
                )
            else:
                console.print(f"[red]Server unreachable: {status['error'] or status['status_code']}[/red]")

        elif cmd == "/stats":
            await self._print_stats()

        elif cmd == "/history":
            current = self.sessions.current_session
            if current is None or not current.messages:
                console.print("[dim]No conversation history[/dim]")
            else:
                for msg in current.messages:
                    color = "green" if msg.role.value == "user" else "blue"
                    preview = escape(msg.content[:200]) if msg.content else "(empty)"
                    console.print(
                        f"[{color}]{msg.role.value}[/{color}] [dim]({msg.token_count} tok)[/dim] "
                        f"{preview}"
                    )

        else:
            console.print(f"[red]Unknown command: {cmd}[/red]")
            console.print("[dim]Type /help for available commands[/dim]")

        return True

    def _print_sessions(self) -> None:
        table = Table(title="Sessions")
        table.add_column("")
        table.add_column("ID")
        table.add_column("Name")
        table.add_column("Model")
        table.add_column("Messages", justify="right")
        table.add_column("Tokens", justify="right")
        current_id = self.sessions.current_session_id
        for s in self.sessions.sessions:
            table.add_row(
                "*" if s.id == current_id else "",
                s.id[:8],
                s.name or "(unnamed)",
                s.model,
                str(len(s.messages)),
                str(s.total_tokens),
            )
        console.print(table)

    async def _print_stats(self) -> None:
        current = self.sessions.current_session
        if current is not None:
            ctx = self.sessions.get_context_manager(current.id)
            limit = self.config.context.trim_threshold
            console.print(
                f"Current session: [bold]{current.total_tokens}[/bold] / {limit} tokens"
                + (" [yellow](history is getting long)[/yellow]" if ctx and ctx.needs_summarization else "")
            )
            stats = await self.sessions.session_stats(current.id)
            console.print(
                f"[dim]{stats['message_count']} messages stored, "
                f"{stats['user_tokens']} user / {stats['assistant_tokens']} assistant tokens, "
                f"{stats['duration']}s[/dim]"
            )

        table = Table(title="Token usage by model")
        table.add_column("Model")
        table.add_column("Tokens", justify="right")
        for row in await self.sessions.token_usage_by_model():
            table.add_row(row["model"], str(row["tokens"]))
        console.print(table)

    def _print_banner(self) -> None:
        current = self.sessions.current_session
        model = current.model if current else self.config.ollama.default_model
        console.print(
            Panel(
                Text.from_markup(
                    "[bold cyan]localchat[/bold cyan]\n"
                    f"  [dim]Server:[/dim] {self.config.ollama.base_url}\n"
                    f"  [dim]Model:[/dim] [bold]{model}[/bold]\n"
                    f"  [dim]Type /help for commands, /quit to exit[/dim]"
                ),
                border_style="cyan",
            )
        )


def _print_fragment(fragment: str) -> None:
    console.print(fragment, end="", markup=False, highlight=False, soft_wrap=True)
