"""Configuration loading for datapoll."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    environment: str = "development"  # "development" or "production"

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass
class CacheConfig:
    """Configuration for the sharded change cache."""

    prefix: str = ""  # empty: derived from the environment
    retention_seconds: int = 60 * 30
    shard_size: int = 100_000
    max_shards: int = 100
    lock_name: str = "data_poll_cache"
    lock_timeout_seconds: float = 20


@dataclass
class StoreConfig:
    """Configuration for the shard store backend."""

    backend: str = "memory"  # "memory" or "sqlite"
    db_path: str = "~/.datapoll/cache.db"
    max_value_size: int = 100_000


@dataclass
class SessionConfig:
    ttl_seconds: int = 60 * 60


@dataclass
class PollConfig:
    """Configuration for short and long polls."""

    long_poll_seconds: float = 60 * 4
    sleep_seconds: float = 5
    stale_scope: str = "session"  # "session" or "unscoped"


@dataclass
class ClientConfig:
    """Configuration for the polling client."""

    server_url: str = "http://127.0.0.1:8080"
    interval_seconds: float = 60 * 10
    long: bool = True
    max_errors: int = 3


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    poll: PollConfig = field(default_factory=PollConfig)
    client: ClientConfig = field(default_factory=ClientConfig)

    @property
    def is_production(self) -> bool:
        return self.server.environment == "production"

    @property
    def cache_prefix(self) -> str:
        """Cache key prefix, keeping production and development apart."""
        if self.cache.prefix:
            return self.cache.prefix
        return "_prod" if self.is_production else "_dev"


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with DATAPOLL_ prefix."""
    return os.environ.get(f"DATAPOLL_{key}", default)


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Server overrides
    if host := _get_env("HOST"):
        config.server.host = host
    if port := _get_env("PORT"):
        config.server.port = int(port)
    if environment := _get_env("ENVIRONMENT"):
        config.server.environment = environment

    # Cache overrides
    if prefix := _get_env("CACHE_PREFIX"):
        config.cache.prefix = prefix
    if retention := _get_env("CACHE_RETENTION_SECONDS"):
        config.cache.retention_seconds = int(retention)
    if lock_timeout := _get_env("CACHE_LOCK_TIMEOUT_SECONDS"):
        config.cache.lock_timeout_seconds = float(lock_timeout)

    # Store overrides
    if backend := _get_env("STORE_BACKEND"):
        config.store.backend = backend
    if db_path := _get_env("STORE_DB_PATH"):
        config.store.db_path = db_path

    # Poll overrides
    if long_poll := _get_env("LONG_POLL_SECONDS"):
        config.poll.long_poll_seconds = float(long_poll)
    if stale_scope := _get_env("STALE_SCOPE"):
        config.poll.stale_scope = stale_scope

    # Client overrides
    if server_url := _get_env("SERVER_URL"):
        config.client.server_url = server_url
    if long := _get_env("CLIENT_LONG"):
        config.client.long = _parse_bool(long)

    return config


def _validate(config: Config) -> Config:
    """Reject settings the poll subsystem cannot run with."""
    if config.store.backend not in ("memory", "sqlite"):
        raise ValueError(f"Unknown store backend: {config.store.backend}")
    if config.poll.stale_scope not in ("session", "unscoped"):
        raise ValueError(f"Unknown stale scope: {config.poll.stale_scope}")
    if config.cache.shard_size > config.store.max_value_size:
        raise ValueError(
            f"cache.shard_size ({config.cache.shard_size}) exceeds "
            f"store.max_value_size ({config.store.max_value_size})"
        )
    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded and validated Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    environment=server_data.get(
                        "environment", config.server.environment
                    ),
                )

            # Parse cache config
            if "cache" in data:
                cache_data = data["cache"]
                config.cache = CacheConfig(
                    prefix=cache_data.get("prefix", config.cache.prefix),
                    retention_seconds=cache_data.get(
                        "retention_seconds", config.cache.retention_seconds
                    ),
                    shard_size=cache_data.get("shard_size", config.cache.shard_size),
                    max_shards=cache_data.get("max_shards", config.cache.max_shards),
                    lock_name=cache_data.get("lock_name", config.cache.lock_name),
                    lock_timeout_seconds=cache_data.get(
                        "lock_timeout_seconds", config.cache.lock_timeout_seconds
                    ),
                )

            # Parse store config
            if "store" in data:
                store_data = data["store"]
                config.store = StoreConfig(
                    backend=store_data.get("backend", config.store.backend),
                    db_path=store_data.get("db_path", config.store.db_path),
                    max_value_size=store_data.get(
                        "max_value_size", config.store.max_value_size
                    ),
                )

            # Parse sessions config
            if "sessions" in data:
                config.sessions = SessionConfig(
                    ttl_seconds=data["sessions"].get(
                        "ttl_seconds", config.sessions.ttl_seconds
                    )
                )

            # Parse poll config
            if "poll" in data:
                poll_data = data["poll"]
                config.poll = PollConfig(
                    long_poll_seconds=poll_data.get(
                        "long_poll_seconds", config.poll.long_poll_seconds
                    ),
                    sleep_seconds=poll_data.get(
                        "sleep_seconds", config.poll.sleep_seconds
                    ),
                    stale_scope=poll_data.get("stale_scope", config.poll.stale_scope),
                )

            # Parse client config
            if "client" in data:
                client_data = data["client"]
                config.client = ClientConfig(
                    server_url=client_data.get("server_url", config.client.server_url),
                    interval_seconds=client_data.get(
                        "interval_seconds", config.client.interval_seconds
                    ),
                    long=client_data.get("long", config.client.long),
                    max_errors=client_data.get("max_errors", config.client.max_errors),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    return _validate(config)
