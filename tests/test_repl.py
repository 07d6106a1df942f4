import io
import json
from unittest.mock import MagicMock

import httpx
import pytest
from click.testing import CliRunner
from rich.console import Console

from cloddo import config as config_module
from cloddo import logging as logging_module
from cloddo.chat import ChatStore, MessageLifecycleController, MessageStatus
from cloddo.config import Config
from cloddo.llm import AnthropicClient, AuthError, BaseLLM, CompletionResult
from cloddo.logging import ConversationLogger
from cloddo.main import build_controller, main
from cloddo.repl import ChatREPL

API_KEY = "sk-ant-test-" + "x" * 40


class MockLLM(BaseLLM):
    """Fails the first ``failures`` calls, then answers "Hello!"."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = 0

    def complete(self, request, *, timeout=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise AuthError("invalid x-api-key")
        return CompletionResult("Hello!", "end_turn", 3, 2)

    def stream_complete(self, request, *, timeout=None):
        raise NotImplementedError


@pytest.fixture
def setup(tmp_path):
    """Build a REPL around a real store, a fake client and a scripted prompt."""

    def build(client=None, stream=False, api_key=API_KEY, inputs=()):
        client = client or MockLLM()
        config = Config(api_key=api_key, model="test-model", stream=stream)
        store = ChatStore(tmp_path)
        controller = MessageLifecycleController(
            store,
            lambda key: client,
            lambda: config.api_key,
            model=config.model,
            max_tokens=config.max_tokens,
            logger=ConversationLogger("test-model", log_dir=tmp_path / "logs"),
        )
        session = MagicMock()
        session.prompt.side_effect = list(inputs)
        output = io.StringIO()
        console = Console(file=output, width=120, color_system=None)
        repl = ChatREPL(controller, store, config, session=session, console=console)
        return repl, output

    return build


def test_repl_commands(setup):
    """Test REPL command handling."""
    repl, _ = setup()
    repl.open_latest_chat()

    # Test /exit
    assert repl.commands["/exit"]("") is True
    assert repl.commands["quit"]("") is True

    # Test /stream toggles streaming
    assert repl.commands["/stream"]("/stream") is False
    assert repl.config.stream is True

    # Test /debug toggles debug
    repl.commands["/debug"]("/debug")
    assert repl.config.debug is True

    # Test /key sets the session key
    repl.commands["/key"]("/key sk-ant-new")
    assert repl.config.api_key == "sk-ant-new"


def test_config_command_masks_key(setup):
    repl, output = setup()
    repl.commands["/config"]("/config")

    text = output.getvalue()
    assert "sk-ant-...xxxx" in text
    assert API_KEY not in text
    assert "Config file" in text


def test_debug_mode_traces_lifecycle(setup):
    repl, output = setup(inputs=["/debug", "Hi", "/exit"])

    repl.run()

    text = output.getvalue()
    assert "debug: appended" in text
    assert "debug: resolved" in text


def test_new_and_switch(setup):
    repl, output = setup()
    repl.open_latest_chat()
    first = repl.chat_id

    repl.commands["/new"]("/new Second chat")
    second = repl.chat_id
    assert second != first
    assert repl.store.load_chat(second).title == "Second chat"

    repl.commands["/switch"](f"/switch {first}")
    assert repl.chat_id == first

    repl.commands["/switch"]("/switch nope")
    assert repl.chat_id == first
    assert "Unknown chat: nope" in output.getvalue()


def test_run_sends_message(setup):
    repl, output = setup(inputs=["Hello", "/exit"])

    repl.run()

    history = repl.store.history(repl.chat_id)
    assert [(m.role, m.content) for m in history] == [("user", "Hello"), ("assistant", "Hello!")]
    text = output.getvalue()
    assert "Hello!" in text
    assert "Goodbye!" in text


def test_failed_message_is_offered_again(setup):
    """The next prompt is pre-filled with the text of a failed message."""
    repl, output = setup(client=MockLLM(failures=1), inputs=["Summarize this", EOFError()])

    repl.run()

    prompts = repl.session.prompt.call_args_list
    assert prompts[0].kwargs["default"] == ""
    assert prompts[1].kwargs["default"] == "Summarize this"
    assert "Edit and resend" in output.getvalue()

    (user,) = repl.store.history(repl.chat_id)
    assert user.status == MessageStatus.FAILED


def test_missing_key_points_to_key_command(setup):
    repl, output = setup(api_key="", inputs=["Hi", "/exit"])

    repl.run()

    assert "/key" in output.getvalue()


def test_retry_command(setup):
    repl, _ = setup(client=MockLLM(failures=1), inputs=["Hi", "/retry", "/exit"])

    repl.run()

    history = repl.store.history(repl.chat_id)
    assert [(m.content, m.status) for m in history] == [
        ("Hi", MessageStatus.COMPLETE),
        ("Hello!", MessageStatus.COMPLETE),
    ]


def test_streamed_reply_is_printed(setup):
    chunks = [
        'data: {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"}}\n\n',
        'data: {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "lo!"}}\n\n',
        'data: {"type": "message_stop"}\n\n',
    ]

    def handler(request):
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, content="".join(chunks).encode())

    client = AnthropicClient(API_KEY, transport=httpx.MockTransport(handler))
    repl, output = setup(client=client, stream=True, inputs=["Hi", "/exit"])

    repl.run()

    assert "Hello!" in output.getvalue()
    assert repl.store.history(repl.chat_id)[-1].content == "Hello!"


def test_chats_lists_saved_chats(setup):
    repl, output = setup()
    repl.open_latest_chat()
    repl.commands["/chats"]("/chats")
    assert "New Chat" in output.getvalue()


def test_build_controller_uses_config(tmp_path):
    config = Config(api_key=API_KEY, base_url="http://localhost:9999/v1", model="m2", max_tokens=32)
    logger = ConversationLogger("m2", log_dir=tmp_path)

    controller = build_controller(config, ChatStore(tmp_path), logger)
    client = controller.client_factory(config.api_key)

    assert isinstance(client, AnthropicClient)
    assert str(client.http.base_url) == "http://localhost:9999/v1/"
    assert controller.model == "m2"
    assert controller.max_tokens == 32


def test_cli_applies_options(tmp_path, monkeypatch):
    monkeypatch.setattr(config_module, "CONFIG_DIR", tmp_path / "home")
    monkeypatch.setattr(config_module, "CONFIG_FILE", tmp_path / "home" / "config.yaml")
    monkeypatch.setattr(logging_module, "LOG_DIR", tmp_path / "logs")
    monkeypatch.setenv("CLODDO_API_KEY", API_KEY)
    monkeypatch.chdir(tmp_path)
    repl_class = MagicMock()
    monkeypatch.setattr("cloddo.repl.ChatREPL", repl_class)

    result = CliRunner().invoke(main, ["--model", "m9", "--no-stream", "-n", "64"])

    assert result.exit_code == 0, result.output
    assert "Model: m9" in result.output
    config = repl_class.call_args.args[2]
    assert (config.model, config.stream, config.max_tokens) == ("m9", False, 64)
    repl_class.return_value.run.assert_called_once()


class BrokenLLM(MockLLM):
    def complete(self, request, *, timeout=None):
        raise RuntimeError("socket closed unexpectedly")


def test_unexpected_client_failure_shows_error(setup):
    repl, output = setup(client=BrokenLLM(), inputs=["Hi", "/exit"])

    repl.run()

    text = output.getvalue()
    assert "socket closed unexpectedly" in text
    assert "Goodbye!" in text
    (user,) = repl.store.history(repl.chat_id)
    assert user.status == MessageStatus.FAILED
    assert not repl.controller.is_pending(repl.chat_id)


def test_dead_worker_does_not_hang_the_prompt(setup):
    """A submission that blows up on its worker still ends the wait."""
    repl, output = setup(inputs=["Hi", "/exit"])

    def listener(event):
        if event.kind == "appended":
            raise RuntimeError("listener broke")

    repl.controller.add_listener(listener)

    repl.run()

    text = output.getvalue()
    assert "listener broke" in text
    assert "Goodbye!" in text
    (user,) = repl.store.history(repl.chat_id)
    assert user.status == MessageStatus.FAILED
    assert repl.session.prompt.call_args_list[1].kwargs["default"] == "Hi"


def test_rejected_key_is_not_applied(setup):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, json={"error": {"type": "authentication_error", "message": "invalid x-api-key"}})

    client = AnthropicClient(API_KEY, transport=httpx.MockTransport(handler))
    repl, output = setup(client=client)
    repl.open_latest_chat()

    repl.commands["/key"]("/key sk-ant-" + "y" * 40)

    assert repl.config.api_key == API_KEY
    assert len(calls) == 1
    assert "rejected" in output.getvalue()


def test_cli_exits_on_invalid_config(tmp_path, monkeypatch):
    monkeypatch.setattr(config_module, "CONFIG_DIR", tmp_path / "home")
    monkeypatch.setattr(config_module, "CONFIG_FILE", tmp_path / "home" / "config.yaml")
    monkeypatch.setattr(logging_module, "LOG_DIR", tmp_path / "logs")
    monkeypatch.setenv("CLODDO_API_KEY", API_KEY)
    monkeypatch.delenv("CLODDO_MAX_TOKENS", raising=False)
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".cloddo.yaml").write_text("max_tokens: 0\n", encoding="utf-8")
    repl_class = MagicMock()
    monkeypatch.setattr("cloddo.repl.ChatREPL", repl_class)

    result = CliRunner().invoke(main, [])

    assert result.exit_code == 1
    assert "max_tokens must be a positive integer" in result.output
    repl_class.assert_not_called()
