# src/chatdispatch/wire_config.py
from __future__ import annotations

import importlib
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from chatdispatch.adapters.ws_transport import WSTransportConfig
from chatdispatch.core import log
from chatdispatch.core.bus import BridgeConfig
from chatdispatch.core.context import ButtonRegistry
from chatdispatch.core.dispatcher import HandlerList, HandlerListBuilder
from chatdispatch.core.errors import ConfigError

l = log.get(__name__)

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


@dataclass
class HandlerSpec:
    """One row of the handler table: which context, which filter, which function."""
    context: str
    handler: str
    commands: List[str] = field(default_factory=list)
    button: Optional[str] = None
    wrap: bool = False


@dataclass
class LogConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class AppConfig:
    token: Optional[str] = None
    transport: WSTransportConfig = field(default_factory=WSTransportConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    concurrent: bool = False
    log: LogConfig = field(default_factory=LogConfig)
    buttons: List[str] = field(default_factory=list)
    handlers: List[HandlerSpec] = field(default_factory=list)


def _expand_env(value: Any) -> Any:
    """Substitute ${NAME} / ${NAME:-default} inside strings, recursively."""
    if isinstance(value, str):
        def sub(m: "re.Match[str]") -> str:
            name, default = m.group(1), m.group(2)
            got = os.getenv(name, default)
            if got is None:
                raise ConfigError(f"environment variable {name} is not set")
            return got
        return _ENV_REF.sub(sub, value)
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    return value


def resolve(ref: str) -> Any:
    """'package.module:attr' (or 'package.module.attr') -> the object."""
    module, sep, attr = ref.partition(":")
    if not sep:
        module, _, attr = ref.rpartition(".")
    if not module or not attr:
        raise ConfigError(f"bad reference {ref!r}; expected 'module:attr'")
    try:
        obj = importlib.import_module(module)
    except ImportError as e:
        raise ConfigError(f"cannot import {module!r} for {ref!r}") from e
    try:
        for part in attr.split("."):
            obj = getattr(obj, part)
    except AttributeError as e:
        raise ConfigError(f"{ref!r} not found") from e
    return obj


def parse_config(data: Dict[str, Any]) -> AppConfig:
    data = _expand_env(data or {})

    bot = data.get("bot") or {}
    token = bot.get("token") or os.getenv("BOT_TOKEN") or None

    tr = data.get("transport") or {}
    transport = WSTransportConfig(
        url=str(tr.get("url", WSTransportConfig.url)),
        reconnect_delay=float(tr.get("reconnect_delay", WSTransportConfig.reconnect_delay)),
        token=token,
    )

    br = data.get("bridge") or {}
    bridge = BridgeConfig(queue_warn_depth=int(br.get("queue_warn_depth", BridgeConfig.queue_warn_depth)))

    lg = data.get("log") or {}
    log_cfg = LogConfig(level=str(lg.get("level", "INFO")), json=bool(lg.get("json", False)))

    handlers = []
    for i, row in enumerate(data.get("handlers") or []):
        if not isinstance(row, dict) or "context" not in row or "handler" not in row:
            raise ConfigError(f"handlers[{i}] needs 'context' and 'handler'")
        handlers.append(HandlerSpec(
            context=str(row["context"]),
            handler=str(row["handler"]),
            commands=[str(c) for c in row.get("commands") or []],
            button=row.get("button"),
            wrap=bool(row.get("wrap", False)),
        ))

    return AppConfig(
        token=token,
        transport=transport,
        bridge=bridge,
        concurrent=bool((data.get("loop") or {}).get("concurrent", False)),
        log=log_cfg,
        buttons=[str(b) for b in data.get("buttons") or []],
        handlers=handlers,
    )


def load_config(yaml_path: str) -> AppConfig:
    path = Path(yaml_path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"cannot read {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return parse_config(data or {})


def _register(b: HandlerListBuilder, row: HandlerSpec, fn: Callable, buttons: ButtonRegistry) -> None:
    kind = row.context
    if kind == "command":
        (b.command if row.wrap else b.command_handler)(*row.commands)(fn)
    elif kind == "text":
        (b.text if row.wrap else b.text_handler)(fn)
    elif kind == "enter":
        (b.on_enter if row.wrap else b.on_enter_handler)(fn)
    elif kind == "callback":
        if row.button:
            button_cls = resolve(row.button)
            buttons.register(button_cls)
            (b.callback if row.wrap else b.callback_handler)(button_cls)(fn)
        else:
            (b.any_callback if row.wrap else b.any_callback_handler)(fn)
    elif kind == "fallback":
        (b.fallback if row.wrap else b.fallback_handler)(fn)
    else:
        raise ConfigError(f"unknown handler context {kind!r}")


def build_handlers(cfg: AppConfig) -> Tuple[HandlerList, ButtonRegistry]:
    """Register every handler row in file order."""
    buttons = ButtonRegistry()
    for ref in cfg.buttons:
        buttons.register(resolve(ref))
    b = HandlerListBuilder()
    for row in cfg.handlers:
        fn = resolve(row.handler)
        if not callable(fn):
            raise ConfigError(f"{row.handler!r} is not callable")
        _register(b, row, fn, buttons)
        l.info("handler %s -> %s", row.context, row.handler)
    return b.build(), buttons


def build_from_yaml(yaml_path: str) -> Tuple[AppConfig, HandlerList, ButtonRegistry]:
    """Read the YAML file and assemble config, handler list and button registry."""
    cfg = load_config(yaml_path)
    handlers, buttons = build_handlers(cfg)
    return cfg, handlers, buttons
