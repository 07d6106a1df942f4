"""Interactive REPL for Cloddo."""

import threading

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich import box
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from prompt_toolkit.styles import Style as PromptStyle
from prompt_toolkit.lexers import PygmentsLexer
from prompt_toolkit.completion import WordCompleter
from pygments.lexers.markup import MarkdownLexer

from .abort_controller import AbortController
from .chat.controller import ChatEvent, MessageLifecycleController, SubmissionState, SubmitOutcome
from .chat.message_log import MessageStatus
from .chat.store import ChatStore
from .config import Config

COMMANDS = ["/new", "/chats", "/switch", "/stream", "/retry", "/key", "/config", "/debug", "/help", "/exit", "/quit"]


class ChatREPL:
    """Interactive Read-Eval-Print Loop for chatting."""

    def __init__(
        self,
        controller: MessageLifecycleController,
        store: ChatStore,
        config: Config,
        session=None,
        console: Console | None = None,
    ):
        self.controller = controller
        self.store = store
        self.config = config
        self.console = console or Console()
        self.session = session or self._setup_session()
        self.commands = {
            "/new": self.cmd_new,
            "/chats": self.cmd_chats,
            "/switch": self.cmd_switch,
            "/stream": self.cmd_stream,
            "/retry": self.cmd_retry,
            "/key": self.cmd_key,
            "/config": self.cmd_config,
            "/debug": self.cmd_debug,
            "/help": self.cmd_help,
            "exit": self.cmd_exit,
            "/exit": self.cmd_exit,
            "quit": self.cmd_exit,
            "/quit": self.cmd_exit,
        }
        self.controller.add_listener(self._on_event)

    def _setup_session(self):
        """Configure prompt_toolkit session."""
        style = PromptStyle.from_dict({
            'prompt': '#00aa00 bold',
        })

        command_completer = WordCompleter(COMMANDS, ignore_case=True)

        # History file in project-specific directory
        history_path = self.store.project_root / ".cloddo" / "history"
        history_path.parent.mkdir(parents=True, exist_ok=True)

        return PromptSession(
            history=FileHistory(str(history_path)),
            lexer=PygmentsLexer(MarkdownLexer),
            style=style,
            completer=command_completer,
        )

    @property
    def chat_id(self) -> str:
        return self.controller.active_chat_id

    def open_latest_chat(self) -> None:
        """Activate the most recently used chat, creating one if needed."""
        chats = self.store.list_chats()
        chat_id = chats[0]["id"] if chats else self.store.create_chat().id
        self.controller.switch_chat(chat_id)

    def run(self):
        """Start the REPL loop."""
        self.console.print("[bold green]Cloddo[/] - Type /help for commands")
        self.console.print(f"[dim]Model: {self.config.model}[/]")

        if self.chat_id is None:
            self.open_latest_chat()
        self._show_history()

        while True:
            try:
                # A failed submission leaves its text as the chat's draft
                user_input = self.session.prompt(
                    "You> ", default=self.controller.draft(self.chat_id)
                ).strip()

                if not user_input:
                    continue

                cmd = user_input.split()[0].lower()
                if cmd in self.commands:
                    if self.commands[cmd](user_input):
                        break
                    continue

                self._handle_chat(user_input)

            except KeyboardInterrupt:
                self.console.print("\n[dim]Use 'exit' to quit[/]")
                continue
            except EOFError:
                break

        self.console.print("[green]Goodbye![/]")

    def _on_event(self, event: ChatEvent) -> None:
        """Trace lifecycle transitions in debug mode."""
        if not self.config.debug or event.kind == "fragment":
            return
        status = event.message.status.value if event.message else ""
        self.console.print(
            f"[dim]debug: {event.kind} chat={event.chat_id} {status}[/]",
            highlight=False,
        )

    def _wait(self, done: threading.Event, abort: AbortController | None) -> None:
        """Block until the submission finishes; Ctrl-C stops a stream."""
        while True:
            try:
                if done.wait(0.1):
                    return
            except KeyboardInterrupt:
                if abort is not None:
                    abort.abort()
                    self.console.print("\n[dim]Stopping...[/]")
                else:
                    self.console.print("\n[dim]Waiting for the reply to finish...[/]")

    def _handle_chat(self, message: str, retry: bool = False) -> SubmitOutcome:
        """Submit a message on a worker thread and show the outcome."""
        chat_id = self.chat_id
        streaming = self.config.stream
        done = threading.Event()
        outcomes: list[SubmitOutcome] = []

        def on_done(outcome: SubmitOutcome):
            outcomes.append(outcome)
            done.set()

        def on_fragment(fragment: str):
            self.console.print(fragment, end="", markup=False, highlight=False)

        abort = AbortController() if streaming else None
        options = dict(
            stream=streaming,
            on_fragment=on_fragment if streaming else None,
            abort=abort,
        )

        # Label first so fragments from the worker land after it
        if streaming:
            self.console.print("[bold blue]Claude>[/] ", end="")

        if retry:
            self.controller.retry_in_background(chat_id, on_done=on_done, **options)
        else:
            self.controller.submit_in_background(chat_id, message, on_done=on_done, **options)

        if streaming:
            self._wait(done, abort)
            self.console.print()
        else:
            with self.console.status("[bold blue]Claude is thinking...[/]", spinner="dots"):
                self._wait(done, abort)

        outcome = outcomes[0]
        self._display_outcome(outcome, streamed=streaming)
        return outcome

    def _display_outcome(self, outcome: SubmitOutcome, streamed: bool) -> None:
        if outcome.state == SubmissionState.REJECTED:
            self.console.print("[yellow]Nothing to send, or a reply is still pending for this chat[/]")
            return

        if outcome.state == SubmissionState.FAILED:
            error = outcome.error
            hint = "Set a key with /key <api-key>" if error.kind == "missing_credential" else "Edit and resend, or use /retry"
            self.console.print(Panel(
                f"[red]{escape(error.message)}[/]\n[dim]{hint}[/]",
                title="[bold red]Error[/]",
                border_style="red",
                box=box.ROUNDED,
            ))
            return

        if not streamed and outcome.assistant_message is not None:
            self.console.print(Panel(
                Markdown(outcome.assistant_message.content),
                title="[bold blue]Claude[/]",
                border_style="blue",
                box=box.ROUNDED,
            ))
        if outcome.state == SubmissionState.ABORTED:
            self.console.print("[yellow]Stopped[/]")

        result = outcome.result
        if result is not None:
            self.console.print(
                f"[dim]Tokens: {result.input_tokens:,} in / {result.output_tokens:,} out[/]",
                justify="right",
            )

    def _show_history(self) -> None:
        for message in self.store.history(self.chat_id):
            label = "You" if message.role == "user" else "Claude"
            colour = "green" if message.role == "user" else "blue"
            failed = " [red](failed)[/]" if message.status == MessageStatus.FAILED else ""
            self.console.print(f"[bold {colour}]{label}>[/]{failed} ", end="")
            self.console.print(message.content, markup=False, highlight=False)

    # Commands
    def cmd_new(self, user_input: str):
        parts = user_input.split(maxsplit=1)
        chat = self.store.create_chat(parts[1] if len(parts) > 1 else "")
        self.controller.switch_chat(chat.id)
        self.console.print(f"[green]✓ New chat {chat.id}[/]")
        return False

    def cmd_chats(self, _):
        chats = self.store.list_chats()
        if not chats:
            self.console.print("[yellow]No chats found[/]")
            return False

        self.console.print("\n[bold]Chats:[/]")
        for i, chat in enumerate(chats, 1):
            marker = " [green]← active[/]" if chat["id"] == self.chat_id else ""
            pending = " [yellow](pending)[/]" if self.controller.is_pending(chat["id"]) else ""
            modified = chat.get("last_modified", "")[:16].replace("T", " ")
            self.console.print(f"  [cyan]{i}[/]. {chat['title']} [dim]({chat['id']})[/]{marker}{pending}")
            self.console.print(f"      [dim]{modified} • {chat['message_count']} messages[/]")
        self.console.print("[dim]Use /switch <number|id> to change chat[/]")
        return False

    def cmd_switch(self, user_input: str):
        parts = user_input.split()
        if len(parts) < 2:
            self.console.print("[yellow]Usage: /switch <number|id>[/]")
            return False

        target = parts[1]
        chats = self.store.list_chats()
        chat_id = None
        if target.isdigit() and 0 < int(target) <= len(chats):
            chat_id = chats[int(target) - 1]["id"]
        elif any(c["id"] == target for c in chats):
            chat_id = target

        if chat_id is None:
            self.console.print(f"[red]Unknown chat: {target}[/]")
            return False

        self.controller.switch_chat(chat_id)
        self.console.print(f"[green]✓ Switched to {chat_id}[/]")
        self._show_history()
        return False

    def cmd_stream(self, _):
        self.config.stream = not self.config.stream
        self.console.print(f"[dim]Streaming: {self.config.stream}[/]")
        return False

    def cmd_debug(self, _):
        self.config.debug = not self.config.debug
        self.console.print(f"[dim]Debug mode: {self.config.debug}[/]")
        return False

    def cmd_retry(self, _):
        self._handle_chat("", retry=True)
        return False

    def cmd_key(self, user_input: str):
        parts = user_input.split()
        if len(parts) < 2:
            self.console.print("[yellow]Usage: /key <api-key>[/]")
            return False

        key = parts[1]
        with self.console.status("[dim]Checking API key...[/]", spinner="dots"):
            accepted = self.controller.client_factory(key).validate_api_key()
        if not accepted:
            self.console.print("[red]✗ API key was rejected, keeping the current key[/]")
            return False

        self.config.api_key = key
        self.controller.clear_error(self.chat_id)
        self.console.print("[green]✓ API key set for this session[/]")
        return False

    def cmd_config(self, _):
        """Show current configuration."""
        config = self.config
        self.console.print("\n[bold]Current Configuration:[/]")
        self.console.print(f"  [cyan]Model[/]: {config.model}")
        self.console.print(f"  [cyan]Base URL[/]: {config.base_url}")
        self.console.print(f"  [cyan]Max Tokens[/]: {config.max_tokens}")
        self.console.print(f"  [cyan]Streaming[/]: {config.stream}")
        self.console.print(f"  [cyan]Debug Mode[/]: {config.debug}")
        # Hide API key
        masked_key = f"{config.api_key[:7]}...{config.api_key[-4:]}" if config.api_key else "Not Set"
        self.console.print(f"  [cyan]API Key[/]: {masked_key}")
        self.console.print(f"  [dim]Config file: {config.get_config_path()}[/]")
        self.console.print()
        return False

    def cmd_help(self, _):
        self.console.print("\n[bold]Available Commands:[/]")
        self.console.print("  /new     - Start a new chat: /new [title]")
        self.console.print("  /chats   - List saved chats")
        self.console.print("  /switch  - Switch chat: /switch <number|id>")
        self.console.print("  /stream  - Toggle streaming replies")
        self.console.print("  /debug   - Toggle debug mode")
        self.console.print("  /retry   - Resend the last failed message")
        self.console.print("  /key     - Set the API key for this session")
        self.console.print("  /config  - Show current configuration")
        self.console.print("  /exit    - Quit Cloddo")
        self.console.print()
        return False

    def cmd_exit(self, _):
        return True
