import sys
import textwrap

import pytest

from chatdispatch.core.contracts import HANDLED, PASS_THROUGH
from chatdispatch.core.context import CallbackButtonContext, CommandContext, NewMessageContext
from chatdispatch.core.errors import ConfigError
from chatdispatch.wire_config import build_from_yaml, load_config, resolve

HANDLERS_SRC = textwrap.dedent('''
    from dataclasses import dataclass
    from chatdispatch.core.context import CallbackButton
    from chatdispatch.core.contracts import HANDLED, PASS_THROUGH

    CALLS = []

    @dataclass
    class Ok(CallbackButton):
        tag = "ok"

    async def start(ctx):
        CALLS.append("start")

    async def first_text(ctx):
        CALLS.append("first_text")
        return PASS_THROUGH

    async def second_text(ctx):
        CALLS.append("second_text")
        return HANDLED

    async def pressed(ctx):
        CALLS.append("pressed")

    async def fallback(ctx):
        CALLS.append("fallback")
''')


@pytest.fixture
def handlers_module(tmp_path, monkeypatch):
    (tmp_path / "cfg_handlers.py").write_text(HANDLERS_SRC, encoding="utf-8")
    monkeypatch.syspath_prepend(str(tmp_path))
    sys.modules.pop("cfg_handlers", None)
    yield "cfg_handlers"
    sys.modules.pop("cfg_handlers", None)


def write(tmp_path, body: str):
    path = tmp_path / "bot.yaml"
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return str(path)


def test_load_config_defaults_and_env(tmp_path, monkeypatch):
    monkeypatch.setenv("BOT_TOKEN", "123:abc")
    monkeypatch.setenv("GW", "ws://gw.local:9000")
    cfg = load_config(write(tmp_path, """
        transport:
          url: ${GW}
        bridge:
          queue_warn_depth: 50
        loop:
          concurrent: true
        log:
          level: DEBUG
    """))
    assert cfg.token == "123:abc"
    assert cfg.transport.url == "ws://gw.local:9000"
    assert cfg.transport.token == "123:abc"
    assert cfg.transport.reconnect_delay == 1.0
    assert cfg.bridge.queue_warn_depth == 50
    assert cfg.concurrent is True
    assert cfg.log.level == "DEBUG"
    assert cfg.handlers == []


def test_env_default_and_missing_variable(tmp_path, monkeypatch):
    monkeypatch.delenv("NOPE_NOT_SET", raising=False)
    cfg = load_config(write(tmp_path, """
        transport:
          url: ${NOPE_NOT_SET:-ws://fallback:1}
    """))
    assert cfg.transport.url == "ws://fallback:1"

    with pytest.raises(ConfigError, match="NOPE_NOT_SET"):
        load_config(write(tmp_path, """
            bot:
              token: ${NOPE_NOT_SET}
        """))


def test_bad_files_raise_config_error(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.yaml"))
    with pytest.raises(ConfigError):
        load_config(write(tmp_path, "- just\n- a list\n"))
    with pytest.raises(ConfigError):
        load_config(write(tmp_path, "handlers: [{context: text}]\n"))


@pytest.mark.asyncio
async def test_handler_table_registers_in_file_order(tmp_path, handlers_module):
    m = handlers_module
    cfg, hl, buttons = build_from_yaml(write(tmp_path, f"""
        handlers:
          - context: command
            commands: [start]
            handler: {m}:start
            wrap: true
          - context: text
            handler: {m}:first_text
          - context: text
            handler: {m}:second_text
          - context: callback
            button: {m}:Ok
            handler: {m}:pressed
            wrap: true
          - context: fallback
            handler: {m}:fallback
            wrap: true
    """))
    calls = sys.modules[m].CALLS
    Ok = sys.modules[m].Ok

    assert await hl.handle(CommandContext(bridge=None, command="start")) is HANDLED
    assert await hl.handle(NewMessageContext(bridge=None)) is HANDLED
    assert calls == ["start", "first_text", "second_text"]

    calls.clear()
    assert await hl.handle(CommandContext(bridge=None, command="stop")) is HANDLED
    assert calls == ["fallback"]

    calls.clear()
    button = buttons.decode(buttons.encode(Ok()))
    assert await hl.handle(CallbackButtonContext(bridge=None, button=button)) is HANDLED
    assert calls == ["pressed"]


def test_unknown_context_and_bad_reference(tmp_path, handlers_module):
    with pytest.raises(ConfigError, match="unknown handler context"):
        build_from_yaml(write(tmp_path, f"""
            handlers:
              - context: sticker
                handler: {handlers_module}:start
        """))
    with pytest.raises(ConfigError):
        build_from_yaml(write(tmp_path, f"""
            handlers:
              - context: text
                handler: {handlers_module}:does_not_exist
        """))


def test_resolve_accepts_both_reference_forms():
    assert resolve("chatdispatch.core.contracts:HANDLED") is HANDLED
    assert resolve("chatdispatch.core.contracts.PASS_THROUGH") is PASS_THROUGH
    with pytest.raises(ConfigError):
        resolve("no_such_module_xyz:thing")
    with pytest.raises(ConfigError):
        resolve("justaname")
