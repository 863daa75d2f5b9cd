"""Configuration loader.

Loads settings from ~/.soma/config.json (or a given path) and applies
environment overrides. A missing or broken file falls back to defaults.
"""

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SOMA_HOME = Path.home() / ".soma"
DEFAULT_CONFIG_PATH = SOMA_HOME / "config.json"

BACKENDS = ("ollama", "groq")


@dataclass
class MemoryConfig:
    """Budgets and lifetimes for the memory core.

    Attributes:
        db_path: SQLite database file.
        retention_days: Messages and sessions older than this are purged.
        max_context_messages: Message-count budget of the context window.
        max_context_tokens: Token budget of the context window.
        max_sessions: Capacity of the in-memory session cache.
        retention_warmup_seconds: Delay before the startup retention sweep.
        retention_interval_seconds: Repeat period of the sweep; None runs it once.
    """

    db_path: Path | None = None
    retention_days: float = 30
    max_context_messages: int = 10
    max_context_tokens: int = 4000
    max_sessions: int = 256
    retention_warmup_seconds: float = 5.0
    retention_interval_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = SOMA_HOME / "soma_memory.db"
        self.db_path = Path(self.db_path).expanduser()

        if self.retention_days <= 0:
            raise ValueError("retention_days must be positive")
        if self.max_context_messages < 1:
            raise ValueError("max_context_messages must be at least 1")
        if self.max_context_tokens < 1:
            raise ValueError("max_context_tokens must be at least 1")
        if self.max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")


@dataclass
class FeatureFlags:
    """Toggles; a disabled component becomes a no-op."""

    long_term_logging: bool = True
    context_window: bool = True
    identity_persistence: bool = True


@dataclass
class LLMConfig:
    """Completion backend settings."""

    backend: str = "ollama"
    chat_model: str = "llama3.1:8b"
    vision_model: str = "llava"
    ollama_url: str = "http://localhost:11434"
    timeout: float = 30.0
    groq_api_key: str | None = None

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise ValueError(f"backend must be one of {BACKENDS}, got {self.backend!r}")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")


@dataclass
class ServerConfig:
    """HTTP listener settings."""

    host: str = "127.0.0.1"
    port: int = 7171


@dataclass
class SomaConfig:
    """Top-level configuration."""

    memory: MemoryConfig = field(default_factory=MemoryConfig)
    features: FeatureFlags = field(default_factory=FeatureFlags)
    llm: LLMConfig = field(default_factory=LLMConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    log_dir: Path | None = None

    def __post_init__(self) -> None:
        if self.log_dir is None:
            self.log_dir = SOMA_HOME / "logs"
        self.log_dir = Path(self.log_dir).expanduser()


def load_config(
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> SomaConfig:
    """Load SomaConfig from a JSON file, then apply environment overrides.

    The config file should have this structure (every key optional):
    ```json
    {
      "memory": {
        "db_path": "~/.soma/soma_memory.db",
        "retention_days": 30,
        "max_context_messages": 10,
        "max_context_tokens": 4000,
        "max_sessions": 256
      },
      "features": {
        "long_term_logging": true,
        "context_window": true,
        "identity_persistence": true
      },
      "llm": {"backend": "ollama", "chat_model": "llama3.1:8b", "vision_model": "llava"},
      "server": {"host": "127.0.0.1", "port": 7171}
    }
    ```
    The flat keys `memoryRetentionDays`, `maxContextMessages` and
    `maxContextTokens` are accepted too.

    Args:
        config_path: Path to config file. Uses DEFAULT_CONFIG_PATH if None.
        env: Environment mapping. Uses os.environ if None.

    Returns:
        SomaConfig instance with loaded values.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    env = os.environ if env is None else env

    data: dict[str, Any] = {}
    if not path.exists():
        logger.debug("No config file at %s, using defaults", path)
    else:
        try:
            with open(path, "r") as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                data = loaded
            else:
                logger.warning("Config in %s is not an object. Using defaults.", path)
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON in %s: %s. Using defaults.", path, e)
        except OSError as e:
            logger.warning("Cannot read %s: %s. Using defaults.", path, e)

    return _apply_env(_parse_config(data), env)


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    return value if isinstance(value, dict) else {}


def _number(section: dict[str, Any], key: str, default: Any, *fallbacks: Any) -> Any:
    """First numeric, positive candidate wins; booleans are not numbers."""
    for candidate in (section.get(key), *fallbacks):
        if isinstance(candidate, (int, float)) and not isinstance(candidate, bool) and candidate > 0:
            return candidate
    return default


def _flag(section: dict[str, Any], key: str, default: bool) -> bool:
    value = section.get(key, default)
    return value if isinstance(value, bool) else default


def _string(section: dict[str, Any], key: str, default: str) -> str:
    value = section.get(key)
    return value if isinstance(value, str) and value else default


def _parse_config(data: dict[str, Any]) -> SomaConfig:
    """Parse config dictionary into SomaConfig.

    Args:
        data: Parsed JSON data.

    Returns:
        SomaConfig instance.
    """
    memory_data = _section(data, "memory")
    features_data = _section(data, "features")
    llm_data = _section(data, "llm")
    server_data = _section(data, "server")

    defaults = MemoryConfig()
    db_path = memory_data.get("db_path")
    memory = MemoryConfig(
        db_path=Path(db_path) if isinstance(db_path, str) and db_path else None,
        retention_days=_number(
            memory_data, "retention_days", defaults.retention_days,
            data.get("memoryRetentionDays"),
        ),
        max_context_messages=_number(
            memory_data, "max_context_messages", defaults.max_context_messages,
            data.get("maxContextMessages"),
        ),
        max_context_tokens=_number(
            memory_data, "max_context_tokens", defaults.max_context_tokens,
            data.get("maxContextTokens"),
        ),
        max_sessions=_number(memory_data, "max_sessions", defaults.max_sessions),
        retention_warmup_seconds=_number(
            memory_data, "retention_warmup_seconds", defaults.retention_warmup_seconds
        ),
        retention_interval_seconds=_number(memory_data, "retention_interval_seconds", None),
    )

    features = FeatureFlags(
        long_term_logging=_flag(features_data, "long_term_logging", True),
        context_window=_flag(features_data, "context_window", True),
        identity_persistence=_flag(features_data, "identity_persistence", True),
    )

    llm_defaults = LLMConfig()
    backend = _string(llm_data, "backend", llm_defaults.backend)
    if backend not in BACKENDS:
        logger.warning("Unknown llm backend %r, using %s", backend, llm_defaults.backend)
        backend = llm_defaults.backend
    llm = LLMConfig(
        backend=backend,
        chat_model=_string(llm_data, "chat_model", llm_defaults.chat_model),
        vision_model=_string(llm_data, "vision_model", llm_defaults.vision_model),
        ollama_url=_string(llm_data, "ollama_url", llm_defaults.ollama_url),
        timeout=_number(llm_data, "timeout", llm_defaults.timeout),
    )

    server = ServerConfig(
        host=_string(server_data, "host", ServerConfig.host),
        port=_number(server_data, "port", ServerConfig.port),
    )

    log_dir = data.get("log_dir")
    return SomaConfig(
        memory=memory,
        features=features,
        llm=llm,
        server=server,
        log_dir=Path(log_dir) if isinstance(log_dir, str) and log_dir else None,
    )


def _apply_env(config: SomaConfig, env: Mapping[str, str]) -> SomaConfig:
    """Override configuration from environment variables."""
    if env.get("SOMA_DB_PATH"):
        config.memory.db_path = Path(env["SOMA_DB_PATH"]).expanduser()
    if env.get("SOMA_LLM_BACKEND") in BACKENDS:
        config.llm.backend = env["SOMA_LLM_BACKEND"]
    if env.get("SOMA_CHAT_MODEL"):
        config.llm.chat_model = env["SOMA_CHAT_MODEL"]
    if env.get("SOMA_VISION_MODEL"):
        config.llm.vision_model = env["SOMA_VISION_MODEL"]
    if env.get("OLLAMA_URL"):
        config.llm.ollama_url = env["OLLAMA_URL"]
    if env.get("GROQ_API_KEY"):
        config.llm.groq_api_key = env["GROQ_API_KEY"]
    if env.get("PORT", "").isdigit():
        config.server.port = int(env["PORT"])
    return config
