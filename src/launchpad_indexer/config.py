"""Runtime configuration read from the environment and `.env`.

Settings are grouped per concern (database, redis, chain, indexer, metadata,
competition). Every group validates its own fields; `Settings.validate_requirements`
adds the cross-field checks that depend on which CLI command is running.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal, TypeVar

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import make_url
from web3 import Web3

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_GroupT = TypeVar("_GroupT", bound=BaseSettings)


def _load_group(group: type[_GroupT]) -> _GroupT:
    return group(_env_file=_ENV_FILE, _env_file_encoding=_ENV_FILE_ENCODING)


@dataclass(frozen=True)
class SourceConfig:
    """One tracked token-factory deployment."""

    address: str
    start_block: int


def parse_sources(raw: str) -> list[SourceConfig]:
    """Parse `address:startBlock[,address:startBlock...]` into source configs.

    Addresses are lowercased. Duplicate addresses are rejected.
    """
    sources: list[SourceConfig] = []
    seen: set[str] = set()
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        address, sep, block = item.partition(":")
        address = address.strip()
        if not sep:
            raise ValueError(f"INDEXER_SOURCES entry {item!r} must be address:startBlock")
        if not Web3.is_address(address):
            raise ValueError(f"INDEXER_SOURCES entry {item!r} has an invalid address")
        try:
            start_block = int(block.strip())
        except ValueError as e:
            raise ValueError(f"INDEXER_SOURCES entry {item!r} has a non-integer start block") from e
        if start_block < 0:
            raise ValueError(f"INDEXER_SOURCES entry {item!r} has a negative start block")
        address = address.lower()
        if address in seen:
            raise ValueError(f"INDEXER_SOURCES lists {address} more than once")
        seen.add(address)
        sources.append(SourceConfig(address=address, start_block=start_block))
    return sources


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string (sqlite+aiosqlite:// for local runs)",
    )
    pool_size: int = Field(default=5, alias="DATABASE_POOL_SIZE", ge=1, le=100)
    max_overflow: int = Field(default=10, alias="DATABASE_MAX_OVERFLOW", ge=0, le=100)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; enables caching of immutable RPC lookups",
    )
    cache_ttl_seconds: int = Field(
        default=7 * 24 * 3600,
        alias="REDIS_CACHE_TTL_SECONDS",
        ge=60,
        le=90 * 24 * 3600,
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None or v == "":
            return None
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """EVM node JSON-RPC settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_RPC_URL",
        description="Primary JSON-RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback JSON-RPC endpoint",
    )
    chain_id: int | None = Field(
        default=None,
        alias="CHAIN_ID",
        ge=1,
        description="Chain ID used when signing; queried from the node when unset",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="CHAIN_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=600.0,
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=10_000.0,
    )
    max_retries: int = Field(default=3, alias="CHAIN_MAX_RETRIES", ge=1, le=20)
    retry_delay_seconds: float = Field(default=1.0, alias="CHAIN_RETRY_DELAY_SECONDS", ge=0.0, le=60.0)

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None or v == "":
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class IndexerSettings(BaseSettings):
    """Sweep loop settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    sources_raw: str = Field(
        default="",
        alias="INDEXER_SOURCES",
        description="Comma-separated address:startBlock pairs of tracked token factories",
    )
    max_window_blocks: int = Field(default=1000, alias="INDEXER_MAX_WINDOW_BLOCKS", ge=1, le=1_000_000)
    max_sub_range_blocks: int = Field(default=250, alias="INDEXER_MAX_SUB_RANGE_BLOCKS", ge=1, le=1_000_000)
    fetch_concurrency: int = Field(default=4, alias="INDEXER_FETCH_CONCURRENCY", ge=1, le=64)
    idle_sleep_seconds: float = Field(default=5.0, alias="INDEXER_IDLE_SLEEP_SECONDS", ge=0.0, le=3600.0)
    error_backoff_seconds: float = Field(default=30.0, alias="INDEXER_ERROR_BACKOFF_SECONDS", ge=0.0, le=3600.0)
    token_decimals: int = Field(default=18, alias="INDEXER_TOKEN_DECIMALS", ge=0, le=77)

    @field_validator("sources_raw")
    @classmethod
    def validate_sources(cls, v: str) -> str:
        parse_sources(v)
        return v

    @model_validator(mode="after")
    def validate_window(self) -> IndexerSettings:
        if self.max_sub_range_blocks > self.max_window_blocks:
            raise ValueError("INDEXER_MAX_SUB_RANGE_BLOCKS must not exceed INDEXER_MAX_WINDOW_BLOCKS")
        return self

    @property
    def sources(self) -> list[SourceConfig]:
        return parse_sources(self.sources_raw)


class MetadataSettings(BaseSettings):
    """Token metadata fetch settings."""

    model_config = SettingsConfigDict(env_prefix="METADATA_", extra="ignore")

    timeout_seconds: float = Field(default=5.0, alias="METADATA_TIMEOUT_SECONDS", gt=0.0, le=120.0)
    ipfs_gateway: str = Field(
        default="https://ipfs.io/ipfs/",
        alias="METADATA_IPFS_GATEWAY",
        description="HTTP gateway prefix used to resolve ipfs:// metadata URIs",
    )

    @field_validator("ipfs_gateway")
    @classmethod
    def validate_gateway(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("METADATA_IPFS_GATEWAY must be an HTTP(S) URL")
        return v if v.endswith("/") else v + "/"


class CompetitionSettings(BaseSettings):
    """Competition scheduler settings."""

    model_config = SettingsConfigDict(env_prefix="COMPETITION_", extra="ignore")

    enabled: bool = Field(
        default=False,
        alias="COMPETITION_ENABLED",
        description="Run the competition scheduler loop",
    )
    interval_days: int = Field(default=7, alias="COMPETITION_INTERVAL_DAYS", ge=1, le=365)
    collateral_threshold: int = Field(
        default=0,
        alias="COMPETITION_COLLATERAL_THRESHOLD",
        ge=0,
        description="Minimum on-chain collateral (wei) a token needs before a competition may roll over",
    )
    check_interval_seconds: float = Field(
        default=60.0,
        alias="COMPETITION_CHECK_INTERVAL_SECONDS",
        gt=0.0,
        le=24 * 3600.0,
    )
    jitter_min_minutes: int = Field(default=1, alias="COMPETITION_JITTER_MIN_MINUTES", ge=0, le=24 * 60)
    jitter_max_minutes: int = Field(default=59, alias="COMPETITION_JITTER_MAX_MINUTES", ge=0, le=24 * 60)
    submit_max_attempts: int = Field(default=3, alias="COMPETITION_SUBMIT_MAX_ATTEMPTS", ge=1, le=50)
    submit_retry_delay_seconds: float = Field(
        default=15.0,
        alias="COMPETITION_SUBMIT_RETRY_DELAY_SECONDS",
        ge=0.0,
        le=3600.0,
    )
    confirmation_timeout_seconds: float = Field(
        default=300.0,
        alias="COMPETITION_CONFIRMATION_TIMEOUT_SECONDS",
        gt=0.0,
        le=24 * 3600.0,
    )
    observe_timeout_seconds: float = Field(
        default=600.0,
        alias="COMPETITION_OBSERVE_TIMEOUT_SECONDS",
        gt=0.0,
        le=24 * 3600.0,
    )
    manager_private_key: SecretStr | None = Field(
        default=None,
        alias="COMPETITION_MANAGER_PRIVATE_KEY",
        description="Key of the account allowed to start competitions and select winners",
    )

    @model_validator(mode="after")
    def validate_jitter(self) -> CompetitionSettings:
        if self.jitter_min_minutes > self.jitter_max_minutes:
            raise ValueError("COMPETITION_JITTER_MIN_MINUTES must not exceed COMPETITION_JITTER_MAX_MINUTES")
        return self


class Settings(BaseSettings):
    """All indexer settings.

    Example:
        ```python
        from launchpad_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.indexer.sources)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Nested groups read `.env` only when it is passed explicitly.
    database: DatabaseSettings = Field(default_factory=lambda: _load_group(DatabaseSettings))
    redis: RedisSettings = Field(default_factory=lambda: _load_group(RedisSettings))
    chain: ChainSettings = Field(default_factory=lambda: _load_group(ChainSettings))
    indexer: IndexerSettings = Field(default_factory=lambda: _load_group(IndexerSettings))
    metadata: MetadataSettings = Field(default_factory=lambda: _load_group(MetadataSettings))
    competition: CompetitionSettings = Field(default_factory=lambda: _load_group(CompetitionSettings))

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Log competition transactions instead of submitting them",
    )

    def get_logging_level(self) -> int:
        return logging.getLevelName(self.log_level)

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Settings worth logging at startup, with passwords and keys masked."""
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_url": self.chain.rpc_url or "(not set)",
                "fallback_rpc_url": self.chain.fallback_rpc_url or "(not set)",
                "chain_id": str(self.chain.chain_id) if self.chain.chain_id else "(from node)",
            },
            "indexer": {
                "sources": ",".join(f"{s.address}:{s.start_block}" for s in self.indexer.sources) or "(not set)",
                "max_window_blocks": str(self.indexer.max_window_blocks),
                "max_sub_range_blocks": str(self.indexer.max_sub_range_blocks),
                "fetch_concurrency": str(self.indexer.fetch_concurrency),
            },
            "competition": {
                "enabled": str(self.competition.enabled),
                "interval_days": str(self.competition.interval_days),
                "collateral_threshold": str(self.competition.collateral_threshold),
                "manager_private_key": "(set)" if self.competition.manager_private_key else "(not set)",
            },
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    def validate_requirements(
        self, *, command: Literal["run", "index", "schedule", "init-db", "status"]
    ) -> None:
        """Validate command-specific requirements.

        A capability the command needs but which is not configured is a
        startup error; the command must refuse to run.
        """
        if command in ("run", "index", "schedule"):
            if not self.chain.rpc_url:
                raise ValueError("CHAIN_RPC_URL is required")
            if not self.indexer.sources:
                raise ValueError("INDEXER_SOURCES is required")

        if command == "schedule" and not self.competition.enabled:
            raise ValueError("COMPETITION_ENABLED must be true to run the scheduler")

        scheduling = command == "schedule" or (command == "run" and self.competition.enabled)
        if scheduling and not self.dry_run and not self.competition.manager_private_key:
            raise ValueError("COMPETITION_MANAGER_PRIVATE_KEY is required to submit competition transactions")

    @staticmethod
    def _redact_url(url: str) -> str:
        return make_url(url).render_as_string(hide_password=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Forget the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()
