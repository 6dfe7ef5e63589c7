"""
joust/config.py - Engine, decider and store configuration

Reads an optional TOML file (default ~/.joust/config.toml), then applies
environment overrides. Everything has a working default, so a missing file
just means "run with defaults".

Example:
    [engine]
    callback_timeout = 7.0     # seconds per agent callback
    vote_timeout_cap = 4.0     # vote polls use min(callback_timeout, cap)
    vote_scope = "all"         # "all" | "contest" (only members of the joust's tribes)

    [decision]
    mode = "ai"                # "rules" | "ai"
    model = "gpt-4o-mini"
    base_url = "https://api.openai.com/v1"
    timeout = 12.0

    [store]
    driver = "sqlite"          # "sqlite" | "memory"
    path = "./data/agent-joust.sqlite"

    [server]
    port = 3030

Environment overrides:
    JOUST_AGENT_TIMEOUT_MS, JOUST_VOTE_SCOPE, JOUST_WINNER_DECIDER_MODE,
    JOUST_DECIDER_MODEL, OPENAI_API_KEY, JOUST_STORE_DRIVER, JOUST_DB_PATH,
    JOUST_PORT (or PORT)
"""

import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

CONFIG_DIR = Path.home() / ".joust"
CONFIG_PATH = CONFIG_DIR / "config.toml"

DECISION_MODES = ("rules", "ai")
VOTE_SCOPES = ("all", "contest")
STORE_DRIVERS = ("sqlite", "memory")


# ============================================================================
# Data Types
# ============================================================================


@dataclass
class EngineConfig:
    """Callback timeouts and who gets polled for votes."""

    callback_timeout: float = 7.0
    vote_timeout_cap: float = 4.0
    vote_scope: str = "all"

    @property
    def vote_timeout(self) -> float:
        return min(self.callback_timeout, self.vote_timeout_cap)


@dataclass
class DecisionConfig:
    """Winner decision strategy. "ai" needs an api_key to do anything beyond heuristics."""

    mode: str = "rules"
    model: str = "gpt-4o-mini"
    base_url: str = "https://api.openai.com/v1"
    timeout: float = 12.0
    api_key: str | None = None


@dataclass
class StoreConfig:
    driver: str = "sqlite"
    path: str = "./data/agent-joust.sqlite"


@dataclass
class JoustConfig:
    """Top-level configuration."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    decision: DecisionConfig = field(default_factory=DecisionConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    port: int = 3030


# ============================================================================
# Parsing
# ============================================================================


def _choice(value, allowed: tuple[str, ...], default: str, name: str) -> str:
    if value is None:
        return default
    value = str(value).lower()
    if value not in allowed:
        logger.warning(f"Invalid {name} {value!r}, using {default!r}")
        return default
    return value


def _number(value, default, cast, name: str):
    if value is None:
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid {name} {value!r}, using {default!r}")
        return default


def _section(raw: dict, name: str) -> dict:
    data = raw.get(name, {})
    return data if isinstance(data, dict) else {}


def _apply_env(config: JoustConfig, env: Mapping[str, str]) -> None:
    if env.get("JOUST_AGENT_TIMEOUT_MS"):
        try:
            config.engine.callback_timeout = int(env["JOUST_AGENT_TIMEOUT_MS"]) / 1000
        except ValueError:
            logger.warning(f"Ignoring bad JOUST_AGENT_TIMEOUT_MS: {env['JOUST_AGENT_TIMEOUT_MS']!r}")

    config.engine.vote_scope = _choice(
        env.get("JOUST_VOTE_SCOPE"), VOTE_SCOPES, config.engine.vote_scope, "vote scope"
    )
    config.decision.mode = _choice(
        env.get("JOUST_WINNER_DECIDER_MODE"), DECISION_MODES, config.decision.mode, "decider mode"
    )
    config.decision.model = env.get("JOUST_DECIDER_MODEL") or config.decision.model
    config.decision.api_key = env.get("OPENAI_API_KEY") or config.decision.api_key
    config.store.driver = _choice(
        env.get("JOUST_STORE_DRIVER"), STORE_DRIVERS, config.store.driver, "store driver"
    )
    config.store.path = env.get("JOUST_DB_PATH") or config.store.path

    port = env.get("JOUST_PORT") or env.get("PORT")
    if port:
        try:
            config.port = int(port)
        except ValueError:
            logger.warning(f"Ignoring bad port: {port!r}")


def load_config(path: Path | None = None, env: Mapping[str, str] | None = None) -> JoustConfig:
    """
    Read config from TOML, then apply environment overrides.

    Args:
        path: Override config file path (default: ~/.joust/config.toml)
        env: Override environment mapping (default: os.environ)

    Returns:
        JoustConfig. Missing file or bad TOML falls back to defaults.
    """
    config_path = path or CONFIG_PATH
    raw: dict = {}

    if config_path.exists():
        try:
            with open(config_path, "rb") as f:
                raw = tomllib.load(f)
        except Exception as e:
            logger.warning(f"Failed to parse {config_path}: {e}")
            raw = {}

    engine_data = _section(raw, "engine")
    _engine = EngineConfig()
    engine = EngineConfig(
        callback_timeout=_number(engine_data.get("callback_timeout"), _engine.callback_timeout, float, "callback timeout"),
        vote_timeout_cap=_number(engine_data.get("vote_timeout_cap"), _engine.vote_timeout_cap, float, "vote timeout cap"),
        vote_scope=_choice(engine_data.get("vote_scope"), VOTE_SCOPES, _engine.vote_scope, "vote scope"),
    )

    decision_data = _section(raw, "decision")
    _decision = DecisionConfig()
    decision = DecisionConfig(
        mode=_choice(decision_data.get("mode"), DECISION_MODES, _decision.mode, "decider mode"),
        model=decision_data.get("model", _decision.model),
        base_url=decision_data.get("base_url", _decision.base_url).rstrip("/"),
        timeout=_number(decision_data.get("timeout"), _decision.timeout, float, "decider timeout"),
        api_key=decision_data.get("api_key"),
    )

    store_data = _section(raw, "store")
    _store = StoreConfig()
    store = StoreConfig(
        driver=_choice(store_data.get("driver"), STORE_DRIVERS, _store.driver, "store driver"),
        path=str(Path(store_data.get("path", _store.path)).expanduser()),
    )

    config = JoustConfig(
        engine=engine,
        decision=decision,
        store=store,
        port=_number(_section(raw, "server").get("port"), 3030, int, "server port"),
    )
    _apply_env(config, os.environ if env is None else env)
    return config
