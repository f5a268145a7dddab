from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .breaker import BreakerConfig
from .buffer import BufferConfig
from .idempotency import IdempotencyConfig
from .store import InMemoryStore, PersistenceStore, PostgresStore


class DispatchSettings(BaseSettings):
    """Environment configuration (``DISPATCH_*`` variables or a ``.env`` file).

    Durations are seconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="DISPATCH_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    # breaker
    failure_threshold: int = Field(5, ge=1)
    failure_window: float = Field(60.0, gt=0)
    reset_timeout: float = Field(30.0, gt=0)

    # buffer
    max_batch_size: int = Field(1000, ge=1)
    max_batch_bytes: int = Field(1_048_576, ge=1)
    max_batch_age: float = Field(5.0, gt=0)

    # idempotency
    retention_period: float = Field(48 * 3600.0, gt=0)
    max_pending_age: float = Field(300.0, gt=0)

    # runtime
    workers: int = Field(4, ge=1)
    queue_capacity: int = Field(10_000, ge=1)
    overflow_strategy: Literal["block", "error"] = "block"
    flush_interval: float = Field(0.5, gt=0)
    sweep_interval: float = Field(60.0, gt=0)
    send_timeout: Optional[float] = Field(30.0, gt=0)
    database_url: Optional[str] = None

    @model_validator(mode="after")
    def _pending_outlives_batch(self) -> "DispatchSettings":
        # a Pending key must not be reclaimed while its attempt can still sit in a batch
        if self.max_batch_age >= self.max_pending_age:
            raise ValueError("max_batch_age must be shorter than max_pending_age")
        return self

    def breaker_config(self) -> BreakerConfig:
        return BreakerConfig(
            failure_threshold=self.failure_threshold,
            failure_window=self.failure_window,
            reset_timeout=self.reset_timeout,
        )

    def buffer_config(self) -> BufferConfig:
        return BufferConfig(
            max_batch_size=self.max_batch_size,
            max_batch_bytes=self.max_batch_bytes,
            max_batch_age=self.max_batch_age,
        )

    def idempotency_config(self) -> IdempotencyConfig:
        return IdempotencyConfig(
            retention_period=self.retention_period,
            max_pending_age=self.max_pending_age,
        )

    def persistence_store(self) -> PersistenceStore:
        """PostgresStore for ``database_url``; an InMemoryStore when none is set.

        The Postgres pool is created closed; open it with ``async with``.
        """
        if self.database_url:
            return PostgresStore(self.database_url)
        return InMemoryStore()


@lru_cache()
def get_settings() -> DispatchSettings:
    return DispatchSettings()
