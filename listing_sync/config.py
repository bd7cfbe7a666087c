from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
import os

from listing_sync.domain.models import Partition
from listing_sync.domain.retry import RateLimitPolicy, RetryPolicy

DEFAULT_SEARCH_URL = "https://api.otodom.pl/v1/listings/search"
DEFAULT_DETAIL_URL_TEMPLATES = (
    "https://www.otodom.pl/pl/oferta/{item_id}",
    "https://www.otodom.pl/pl/oferta/ID{item_id}",
)
DEFAULT_CITIES = ("warszawa", "krakow", "wroclaw", "poznan", "gdansk", "lodz")
DEFAULT_TRANSACTION_TYPES = ("sale", "rent")


@dataclass(frozen=True)
class SourceSettings:
    portal: str = "otodom"
    country: str = "poland"
    search_url: str = DEFAULT_SEARCH_URL
    detail_url_templates: tuple[str, ...] = DEFAULT_DETAIL_URL_TEMPLATES
    oauth_token_url: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    cities: tuple[str, ...] = DEFAULT_CITIES
    transaction_types: tuple[str, ...] = DEFAULT_TRANSACTION_TYPES
    page_size: int = 50
    max_pages: int = 500
    http_timeout_seconds: int = 30

    def partitions(self) -> list[Partition]:
        return [Partition(city=city, transaction_type=txn) for city in self.cities for txn in self.transaction_types]


@dataclass(frozen=True)
class SinkSettings:
    api_url: str = "http://localhost:3000/api"
    api_key: str | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class QueueSettings:
    database_url: str | None = None
    pop_timeout_seconds: int = 5
    poll_interval_ms: int = 250
    dedup_horizon_hours: int = 24
    missing_threshold_hours: int = 12
    claim_stale_seconds: int = 600

    @property
    def dedup_horizon(self) -> timedelta:
        return timedelta(hours=self.dedup_horizon_hours)

    @property
    def missing_threshold(self) -> timedelta:
        return timedelta(hours=self.missing_threshold_hours)

    @property
    def claim_stale_after(self) -> timedelta:
        return timedelta(seconds=self.claim_stale_seconds)


@dataclass(frozen=True)
class WorkerRuntimeSettings:
    # 0 keeps the loop running until the stop event fires.
    max_idle_polls: int = 10
    error_backoff_ms: int = 2000
    max_error_backoff_ms: int = 30000
    call_timeout_seconds: int = 60
    stats_log_every: int = 10

    @property
    def daemon(self) -> bool:
        return self.max_idle_polls == 0


@dataclass(frozen=True)
class Settings:
    source: SourceSettings = field(default_factory=SourceSettings)
    sink: SinkSettings = field(default_factory=SinkSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    rate_limit: RateLimitPolicy = field(default_factory=RateLimitPolicy)
    runtime: WorkerRuntimeSettings = field(default_factory=WorkerRuntimeSettings)


def source_settings_from_env() -> SourceSettings:
    return SourceSettings(
        portal=_env_str("SOURCE_PORTAL", "otodom"),
        country=_env_str("SOURCE_COUNTRY", "poland"),
        search_url=_env_str("SOURCE_SEARCH_URL", DEFAULT_SEARCH_URL),
        detail_url_templates=_env_list("SOURCE_DETAIL_URL_TEMPLATES", DEFAULT_DETAIL_URL_TEMPLATES),
        oauth_token_url=_env_optional("SOURCE_OAUTH_TOKEN_URL"),
        client_id=_env_optional("SOURCE_CLIENT_ID"),
        client_secret=_env_optional("SOURCE_CLIENT_SECRET"),
        cities=_env_list("SOURCE_CITIES", DEFAULT_CITIES),
        transaction_types=_env_list("SOURCE_TRANSACTION_TYPES", DEFAULT_TRANSACTION_TYPES),
        page_size=_env_int("SOURCE_PAGE_SIZE", 50),
        max_pages=_env_int("SOURCE_MAX_PAGES", 500),
        http_timeout_seconds=_env_int("HTTP_TIMEOUT_SECONDS", 30),
    )


def sink_settings_from_env() -> SinkSettings:
    return SinkSettings(
        api_url=_env_str("SINK_API_URL", "http://localhost:3000/api"),
        api_key=_env_optional("SINK_API_KEY"),
    )


def queue_settings_from_env() -> QueueSettings:
    return QueueSettings(
        database_url=_env_optional("DATABASE_URL"),
        pop_timeout_seconds=_env_int("QUEUE_POP_TIMEOUT_SECONDS", 5),
        poll_interval_ms=_env_int("QUEUE_POLL_INTERVAL_MS", 250),
        dedup_horizon_hours=_env_int("DEDUP_HORIZON_HOURS", 24),
        missing_threshold_hours=_env_int("MISSING_THRESHOLD_HOURS", 12),
        claim_stale_seconds=_env_int("CLAIM_STALE_SECONDS", 600),
    )


def retry_policy_from_env() -> RetryPolicy:
    return RetryPolicy(
        base_delay_ms=_env_int("RETRY_BASE_DELAY_MS", 1000),
        multiplier=_env_float("RETRY_MULTIPLIER", 2.0),
        max_delay_ms=_env_int("RETRY_MAX_DELAY_MS", 60000),
        jitter_ratio=_env_float("RETRY_JITTER_RATIO", 0.25),
        max_attempts=_env_int("RETRY_MAX_ATTEMPTS", 3),
        page_retry_attempts=_env_int("DISCOVERY_PAGE_RETRY_ATTEMPTS", 3),
    )


def rate_limit_policy_from_env() -> RateLimitPolicy:
    return RateLimitPolicy(
        request_delay_ms=_env_int("REQUEST_DELAY_MS", 2000, allow_zero=True),
        page_delay_ms=_env_int("PAGE_DELAY_MS", 750, allow_zero=True),
        verify_delay_ms=_env_int("VERIFY_DELAY_MS", 3000, allow_zero=True),
    )


def worker_runtime_settings_from_env() -> WorkerRuntimeSettings:
    return WorkerRuntimeSettings(
        max_idle_polls=_env_int("WORKER_MAX_IDLE_POLLS", 10, allow_zero=True),
        error_backoff_ms=_env_int("WORKER_ERROR_BACKOFF_MS", 2000),
        max_error_backoff_ms=_env_int("WORKER_MAX_ERROR_BACKOFF_MS", 30000),
        call_timeout_seconds=_env_int("CALL_TIMEOUT_SECONDS", 60),
        stats_log_every=_env_int("STATS_LOG_EVERY", 10),
    )


def settings_from_env() -> Settings:
    return Settings(
        source=source_settings_from_env(),
        sink=sink_settings_from_env(),
        queue=queue_settings_from_env(),
        retry=retry_policy_from_env(),
        rate_limit=rate_limit_policy_from_env(),
        runtime=worker_runtime_settings_from_env(),
    )


def _env_int(name: str, default: int, *, allow_zero: bool = False) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    if parsed > 0 or (allow_zero and parsed == 0):
        return parsed
    return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = float(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    items = tuple(part.strip() for part in value.split(",") if part.strip())
    return items or default
