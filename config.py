import os
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, TypeVar

from dotenv import load_dotenv

from tools.errors import ConfigurationError
from tools.retry import RetryConfig

T = TypeVar("T")

LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _env(name: str, default: T, parse: Callable[[str], T]) -> T:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return parse(raw.strip())
    except ValueError:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}")


def parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(raw)


def _parse_list(raw: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    """Relay settings, read from the environment (and a .env file if present)."""

    crm_webhook_url: Optional[str] = None
    crm_user_agent: str = "LeadIntakeRelay/1.0"
    webhook_secret: Optional[str] = None
    forward_to_crm: bool = True
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    log_file: Optional[str] = "logs/app.log"

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter_range: float = 0.1
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown: float = 60.0
    fallback_queue: bool = True
    queue_item_delay: float = 1.0

    enable_cors: bool = True
    cors_origins: Tuple[str, ...] = ("*",)
    max_payload_bytes: int = 10 * 1024 * 1024
    rate_limit_max: int = 100  # per client per window, 0 disables
    rate_limit_window: float = 15 * 60

    def __post_init__(self):
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigurationError(f"Unsupported log level: {self.log_level}")
        object.__setattr__(self, "log_level", self.log_level.upper())
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"Invalid port: {self.port}")
        if self.max_payload_bytes <= 0:
            raise ConfigurationError("max_payload_bytes must be positive")
        if self.rate_limit_max < 0 or self.rate_limit_window <= 0:
            raise ConfigurationError("rate limit must be >= 0 requests over a positive window")

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()
        return cls(
            crm_webhook_url=os.getenv("CRM_WEBHOOK_URL") or None,
            crm_user_agent=_env("CRM_USER_AGENT", cls.crm_user_agent, str),
            webhook_secret=os.getenv("WEBHOOK_SECRET") or None,
            forward_to_crm=_env("FORWARD_TO_CRM", cls.forward_to_crm, parse_bool),
            host=_env("WEBHOOK_HOST", cls.host, str),
            port=_env("WEBHOOK_PORT", cls.port, int),
            log_level=_env("LOG_LEVEL", cls.log_level, str),
            log_file=os.getenv("LOG_FILE", cls.log_file) or None,
            max_retries=_env("RETRY_MAX_RETRIES", cls.max_retries, int),
            base_delay=_env("RETRY_BASE_DELAY", cls.base_delay, float),
            max_delay=_env("RETRY_MAX_DELAY", cls.max_delay, float),
            exponential_base=_env("RETRY_EXPONENTIAL_BASE", cls.exponential_base, float),
            jitter_range=_env("RETRY_JITTER_RANGE", cls.jitter_range, float),
            circuit_breaker_threshold=_env("CIRCUIT_BREAKER_THRESHOLD", cls.circuit_breaker_threshold, int),
            circuit_breaker_cooldown=_env("CIRCUIT_BREAKER_COOLDOWN", cls.circuit_breaker_cooldown, float),
            fallback_queue=_env("FALLBACK_QUEUE", cls.fallback_queue, parse_bool),
            queue_item_delay=_env("QUEUE_ITEM_DELAY", cls.queue_item_delay, float),
            enable_cors=_env("ENABLE_CORS", cls.enable_cors, parse_bool),
            cors_origins=_env("CORS_ORIGINS", cls.cors_origins, _parse_list),
            max_payload_bytes=_env("MAX_PAYLOAD_BYTES", cls.max_payload_bytes, int),
            rate_limit_max=_env("RATE_LIMIT_MAX", cls.rate_limit_max, int),
            rate_limit_window=_env("RATE_LIMIT_WINDOW", cls.rate_limit_window, float),
        )

    @property
    def forwarding_enabled(self) -> bool:
        return self.forward_to_crm and bool(self.crm_webhook_url)

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            exponential_base=self.exponential_base,
            jitter_range=self.jitter_range,
            circuit_breaker_threshold=self.circuit_breaker_threshold,
            circuit_breaker_cooldown=self.circuit_breaker_cooldown,
            fallback_queue=self.fallback_queue,
            queue_item_delay=self.queue_item_delay,
        )
