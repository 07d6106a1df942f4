"""Cloddo CLI entry point."""

from pathlib import Path

import click
from rich.console import Console

from . import __version__
from .config import Config
from .chat.controller import MessageLifecycleController
from .chat.store import ChatStore
from .llm.anthropic_client import AnthropicClient
from .logging import init_logger

console = Console()


def build_controller(config: Config, store: ChatStore, logger) -> MessageLifecycleController:
    """Wire the controller to the store, the logger and a key-bound client."""

    def on_protocol_error(error):
        logger.log_stream_event("protocol_error", error.frame, {"error": str(error)})

    def client_factory(api_key: str) -> AnthropicClient:
        return AnthropicClient.from_config(config, api_key=api_key, on_protocol_error=on_protocol_error)

    return MessageLifecycleController(
        store,
        client_factory,
        lambda: config.api_key,
        model=config.model,
        max_tokens=config.max_tokens,
        system=config.system_prompt or None,
        temperature=config.temperature,
        timeout=config.request_timeout,
        logger=logger,
    )


@click.command()
@click.option("--model", "-m", default="", help="Model to chat with")
@click.option("--endpoint", "-e", default="", help="API base URL")
@click.option("--max-tokens", "-n", type=int, default=0, help="Output token budget per reply")
@click.option("--stream/--no-stream", default=None, help="Stream replies as they are generated")
@click.option("--debug", "-d", is_flag=True, help="Enable debug mode")
@click.version_option(version=__version__)
def main(model: str, endpoint: str, max_tokens: int, stream, debug: bool):
    """Cloddo - chat with Claude from the terminal."""

    # Load config
    config = Config.load()
    if model:
        config.model = model
    if endpoint:
        config.base_url = endpoint
    if max_tokens:
        config.max_tokens = max_tokens
    if stream is not None:
        config.stream = stream
    config.debug = config.debug or debug

    errors = config.validate(require_key=False)
    if errors:
        for error in errors:
            console.print(f"[red]Error: {error}[/]")
        raise SystemExit(1)

    # A missing key is reported per chat, so only warn here
    if not config.api_key:
        for error in config.validate():
            console.print(f"[yellow]Warning: {error}[/]")

    logger = init_logger(config.model)

    console.print(f"[bold green]Cloddo v{__version__}[/]")
    console.print(f"[dim]Model: {config.model}[/]")
    console.print(f"[dim]Endpoint: {config.base_url}[/]")
    console.print(f"[dim]Logs: {logger.log_path}[/]")
    console.print()

    store = ChatStore(Path.cwd())
    controller = build_controller(config, store, logger)

    from .repl import ChatREPL
    repl = ChatREPL(controller, store, config)
    repl.run()


if __name__ == "__main__":
    main()
