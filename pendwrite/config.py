from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .models import RetentionPolicy


@dataclass
class QueueConfig:
    max_retries: int = 3
    retry_delay_ms: int = 1_000
    retry_ceiling_ms: int = 60_000
    batch_size: int = 10
    process_interval_ms: int = 5_000
    lease_ms: int = 30_000
    max_parallel_tables: int = 4
    enable_offline_queue: bool = True
    process_on_enqueue: bool = True
    keep_completed: Optional[int] = 100
    completed_ttl_ms: Optional[int] = None

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.retry_delay_ms < 0 or self.retry_ceiling_ms < 0:
            raise ValueError("retry delays must be >= 0")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if self.process_interval_ms <= 0:
            raise ValueError("process_interval_ms must be > 0")
        if self.lease_ms <= 0:
            raise ValueError(
                "lease_ms must be > 0; a zero lease lets every processor steal every claim"
            )
        if self.max_parallel_tables <= 0:
            raise ValueError("max_parallel_tables must be > 0")

    def retention(self) -> RetentionPolicy:
        return RetentionPolicy(
            max_age_ms=self.completed_ttl_ms,
            keep_last=self.keep_completed,
        )

    def backoff_ms(self, attempts: int) -> int:
        """Delay before the next attempt after ``attempts`` failed ones."""
        if attempts <= 0:
            return 0
        return min(self.retry_delay_ms * 2 ** (attempts - 1), self.retry_ceiling_ms)


@dataclass
class StoreConfig:
    table_name: str = "pending_mutations"
    key_prefix: str = "pendwrite"


@dataclass
class RemoteConfig:
    url: str
    api_key: str
    access_token: Optional[str] = None
    timeout_s: float = 10.0
    schema: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("url must not be empty")
        if self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0; remote calls must be bounded")

    @classmethod
    def from_env(cls) -> "RemoteConfig":
        url = os.environ.get("PENDWRITE_REMOTE_URL", "")
        api_key = os.environ.get("PENDWRITE_REMOTE_KEY", "")
        raw_timeout = os.environ.get("PENDWRITE_REMOTE_TIMEOUT_S")
        timeout_s = float(raw_timeout) if raw_timeout else 10.0
        return cls(url=url, api_key=api_key, timeout_s=timeout_s)
