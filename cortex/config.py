"""
Configuration management for cortex stores.

Each store directory holds one cortex.toml naming the embedding and
document providers, plus router weights and guard and fuser defaults.
"""

import importlib.util
import os
import tomllib
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w

from .errors import ValidationError


CONFIG_FILENAME = "cortex.toml"
CONFIG_VERSION = 1

DEFAULT_GUARD_FILTERS = ["api_keys", "secrets", "urls_auth"]


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class RouterConfig:
    """Ranking policy. Weights override the router defaults by signal name."""
    weights: dict[str, float] = field(default_factory=dict)
    half_life_days: float = 30.0
    default_limit: int = 5
    overfetch: int = 3


@dataclass
class GuardConfig:
    replacement: str = "[REDACTED]"
    filters: list[str] = field(default_factory=lambda: list(DEFAULT_GUARD_FILTERS))


@dataclass
class FuserConfig:
    max_tokens: int = 4000
    chars_per_token: int = 4
    source_timeout: float = 10.0
    dedupe: str = "exact"
    format: str = "text"
    guard_filters: list[str] = field(default_factory=lambda: list(DEFAULT_GUARD_FILTERS))
    guard_mode: str = "redact"
    semantic_threshold: float = 0.92


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    default_limit: int = 20

    # None disables semantic features (keyword-only mode)
    embedding: Optional[ProviderConfig] = None
    document: ProviderConfig = field(default_factory=lambda: ProviderConfig("composite"))

    router: RouterConfig = field(default_factory=RouterConfig)
    guard: GuardConfig = field(default_factory=GuardConfig)
    fuser: FuserConfig = field(default_factory=FuserConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check whether the config file exists."""
        return self.config_path.exists()


def detect_default_embedding() -> ProviderConfig:
    """
    Pick the default embedding provider for the current environment.

    Priority:
    1. OpenAI (if an API key is available)
    2. sentence-transformers (if installed; runs locally)
    3. Ollama (probed lazily; the engine runs keyword-only if it isn't up)
    """
    has_openai_key = bool(
        os.environ.get("CORTEX_OPENAI_API_KEY") or
        os.environ.get("OPENAI_API_KEY")
    )
    if has_openai_key:
        return ProviderConfig("openai")
    if importlib.util.find_spec("sentence_transformers") is not None:
        return ProviderConfig("sentence-transformers")
    return ProviderConfig("ollama")


def create_default_config(store_path: Path) -> StoreConfig:
    """Create a new config with auto-detected defaults."""
    return StoreConfig(
        path=store_path,
        embedding=detect_default_embedding(),
    )


def _table(data: dict, name: str) -> dict:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ValidationError(f"[{name}] in {CONFIG_FILENAME} must be a table, not {type(value).__name__}")
    return value


def _coerce(name: str, value: Any, default: Any) -> Any:
    """Match a TOML value to the type of the dataclass default."""
    try:
        if isinstance(default, bool):
            return bool(value)
        if isinstance(default, (int, float)):
            return type(default)(value)
        if isinstance(default, list):
            return list(value)
        if isinstance(default, dict):
            return {k: float(v) for k, v in dict(value).items()}
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Bad value for {name}: {value!r}") from e
    return value


def _section_from_table(cls, name: str, table: dict):
    """Build RouterConfig / GuardConfig / FuserConfig, defaulting missing keys."""
    defaults = cls()
    values = {
        f.name: _coerce(f"{name}.{f.name}", table[f.name], getattr(defaults, f.name))
        for f in fields(cls)
        if f.name in table
    }
    return cls(**values)


def _provider_from_table(table: dict) -> ProviderConfig:
    params = dict(table)
    return ProviderConfig(name=params.pop("name", ""), params=params)


def _provider_to_table(provider: Optional[ProviderConfig]) -> dict:
    if provider is None:
        return {"name": "none"}
    return {"name": provider.name, **provider.params}


def load_config(store_path: Path) -> StoreConfig:
    """
    Read {store_path}/cortex.toml.

    Missing tables and keys take their defaults. Raises FileNotFoundError
    when there is no file, ValidationError when it can't be used.
    """
    path = store_path / CONFIG_FILENAME
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"No {CONFIG_FILENAME} in {store_path}") from None
    except tomllib.TOMLDecodeError as e:
        raise ValidationError(f"{path} is not valid TOML: {e}") from e

    store = _table(data, "store")
    version = store.get("version", CONFIG_VERSION)
    if version > CONFIG_VERSION:
        raise ValidationError(
            f"{path} has config version {version}; this cortex reads up to {CONFIG_VERSION}"
        )

    # name = "none", or no [embedding] at all, selects keyword-only mode
    embedding_table = _table(data, "embedding")
    embedding = None
    if embedding_table.get("name", "none") != "none":
        embedding = _provider_from_table(embedding_table)

    return StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        default_limit=int(store.get("default_limit", 20)),
        embedding=embedding,
        document=_provider_from_table(_table(data, "document") or {"name": "composite"}),
        router=_section_from_table(RouterConfig, "router", _table(data, "router")),
        guard=_section_from_table(GuardConfig, "guard", _table(data, "guard")),
        fuser=_section_from_table(FuserConfig, "fuser", _table(data, "fuser")),
    )


def save_config(config: StoreConfig) -> None:
    """Write cortex.toml, creating the store directory if needed."""
    config.path.mkdir(parents=True, exist_ok=True)
    data = {
        "store": {
            "version": config.version,
            "created": config.created,
            "default_limit": config.default_limit,
        },
        "embedding": _provider_to_table(config.embedding),
        "document": _provider_to_table(config.document),
        "router": asdict(config.router),
        "guard": asdict(config.guard),
        "fuser": asdict(config.fuser),
    }
    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """The store's config, written with detected defaults on first use."""
    if (store_path / CONFIG_FILENAME).exists():
        return load_config(store_path)
    config = create_default_config(store_path)
    save_config(config)
    return config
