"""Runtime configuration for the task engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from lana_advisor.reasoning.pipeline import DEFAULT_FAST_MODEL, DEFAULT_SMART_MODEL
from lana_advisor.reasoning.pricing import DEFAULT_EXCHANGE_RATE, DEFAULT_PRICING

DEFAULT_RELAYS: tuple[str, ...] = (
    "wss://relay.lanavault.space",
    "wss://relay.lanacoin-eternity.com",
)
DEFAULT_AUTHORITY_PUBKEY = "9eb71bf1e9c3189c78800e4c3831c1c1a93ab43b61118818c32e4490891a35b3"
DEFAULT_GATEWAY_URL = "http://127.0.0.1:3001/api/functions"


@dataclass(slots=True)
class EngineSettings:
    """Heartbeat and task lifecycle settings."""

    heartbeat_seconds: float = 60.0
    parameters_refresh_seconds: float = 3_600.0
    pending_max_age_seconds: int = 1_800
    processing_stuck_seconds: int = 300
    batch_size: int = 5
    max_retries: int = 5
    default_exchange_rate: float = DEFAULT_EXCHANGE_RATE
    low_confidence_threshold: int = 70


@dataclass(slots=True)
class EnrichmentSettings:
    """External data source settings."""

    field_timeout_seconds: float = 15.0
    balance_timeout_seconds: float = 15.0
    gateway_url: str = DEFAULT_GATEWAY_URL
    authority_pubkey: str = DEFAULT_AUTHORITY_PUBKEY
    fallback_relays: tuple[str, ...] = DEFAULT_RELAYS


@dataclass(slots=True)
class ReasoningSettings:
    """Completion service settings."""

    api_key: str | None = None
    fast_model: str = DEFAULT_FAST_MODEL
    smart_model: str = DEFAULT_SMART_MODEL
    completion_timeout_seconds: float = 60.0
    pricing: str = DEFAULT_PRICING
    knowledge_enabled: bool = True


@dataclass(slots=True)
class DeliverySettings:
    push_gateway_url: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".lana_advisor.db")
    log_level: str = "INFO"
    engine: EngineSettings = field(default_factory=EngineSettings)
    enrichment: EnrichmentSettings = field(default_factory=EnrichmentSettings)
    reasoning: ReasoningSettings = field(default_factory=ReasoningSettings)
    delivery: DeliverySettings = field(default_factory=DeliverySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("LANA_ADVISOR_DB_PATH", ".lana_advisor.db")),
            log_level=os.getenv("LANA_ADVISOR_LOG_LEVEL", "INFO").strip().upper(),
            engine=EngineSettings(
                heartbeat_seconds=float(os.getenv("LANA_ADVISOR_HEARTBEAT_SECONDS", "60")),
                parameters_refresh_seconds=float(
                    os.getenv("LANA_ADVISOR_PARAMETERS_REFRESH_SECONDS", "3600"),
                ),
                pending_max_age_seconds=int(
                    os.getenv("LANA_ADVISOR_PENDING_MAX_AGE_SECONDS", "1800"),
                ),
                processing_stuck_seconds=int(
                    os.getenv("LANA_ADVISOR_PROCESSING_STUCK_SECONDS", "300"),
                ),
                batch_size=int(os.getenv("LANA_ADVISOR_BATCH_SIZE", "5")),
                max_retries=int(os.getenv("LANA_ADVISOR_MAX_RETRIES", "5")),
                default_exchange_rate=float(
                    os.getenv("LANA_ADVISOR_DEFAULT_EXCHANGE_RATE", str(DEFAULT_EXCHANGE_RATE)),
                ),
                low_confidence_threshold=int(
                    os.getenv("LANA_ADVISOR_LOW_CONFIDENCE_THRESHOLD", "70"),
                ),
            ),
            enrichment=EnrichmentSettings(
                field_timeout_seconds=float(
                    os.getenv("LANA_ADVISOR_FIELD_TIMEOUT_SECONDS", "15"),
                ),
                balance_timeout_seconds=float(
                    os.getenv("LANA_ADVISOR_BALANCE_TIMEOUT_SECONDS", "15"),
                ),
                gateway_url=os.getenv("LANA_ADVISOR_GATEWAY_URL", DEFAULT_GATEWAY_URL).strip(),
                authority_pubkey=os.getenv(
                    "LANA_ADVISOR_AUTHORITY_PUBKEY",
                    DEFAULT_AUTHORITY_PUBKEY,
                ).strip(),
                fallback_relays=_collect_csv("LANA_ADVISOR_FALLBACK_RELAYS") or DEFAULT_RELAYS,
            ),
            reasoning=ReasoningSettings(
                api_key=os.getenv("GEMINI_API_KEY") or None,
                fast_model=os.getenv("LANA_ADVISOR_FAST_MODEL", DEFAULT_FAST_MODEL),
                smart_model=os.getenv("LANA_ADVISOR_SMART_MODEL", DEFAULT_SMART_MODEL),
                completion_timeout_seconds=float(
                    os.getenv("LANA_ADVISOR_COMPLETION_TIMEOUT_SECONDS", "60"),
                ),
                pricing=os.getenv("LANA_ADVISOR_LLM_PRICING", "").strip() or DEFAULT_PRICING,
                knowledge_enabled=_env_bool("LANA_ADVISOR_KNOWLEDGE_ENABLED", default=True),
            ),
            delivery=DeliverySettings(
                push_gateway_url=os.getenv("LANA_ADVISOR_PUSH_GATEWAY_URL", "").strip() or None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the engine cannot run with."""

        engine = self.engine
        if engine.heartbeat_seconds <= 0:
            raise ValueError("LANA_ADVISOR_HEARTBEAT_SECONDS must be > 0.")
        if engine.parameters_refresh_seconds <= 0:
            raise ValueError("LANA_ADVISOR_PARAMETERS_REFRESH_SECONDS must be > 0.")
        if engine.pending_max_age_seconds <= 0:
            raise ValueError("LANA_ADVISOR_PENDING_MAX_AGE_SECONDS must be > 0.")
        if engine.processing_stuck_seconds <= 0:
            raise ValueError("LANA_ADVISOR_PROCESSING_STUCK_SECONDS must be > 0.")
        if engine.batch_size <= 0:
            raise ValueError("LANA_ADVISOR_BATCH_SIZE must be a positive integer.")
        if engine.max_retries <= 0:
            raise ValueError("LANA_ADVISOR_MAX_RETRIES must be a positive integer.")
        if engine.default_exchange_rate <= 0:
            raise ValueError("LANA_ADVISOR_DEFAULT_EXCHANGE_RATE must be > 0.")
        if not 0 <= engine.low_confidence_threshold <= 100:
            raise ValueError("LANA_ADVISOR_LOW_CONFIDENCE_THRESHOLD must be within 0..100.")
        if self.enrichment.field_timeout_seconds <= 0:
            raise ValueError("LANA_ADVISOR_FIELD_TIMEOUT_SECONDS must be > 0.")
        if self.enrichment.balance_timeout_seconds <= 0:
            raise ValueError("LANA_ADVISOR_BALANCE_TIMEOUT_SECONDS must be > 0.")
        if self.reasoning.completion_timeout_seconds <= 0:
            raise ValueError("LANA_ADVISOR_COMPLETION_TIMEOUT_SECONDS must be > 0.")
        _validate_url("LANA_ADVISOR_GATEWAY_URL", self.enrichment.gateway_url)
        if self.delivery.push_gateway_url is not None:
            _validate_url("LANA_ADVISOR_PUSH_GATEWAY_URL", self.delivery.push_gateway_url)


def _collect_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    deduped: list[str] = []
    for part in raw.split(","):
        value = part.strip()
        if value and value not in deduped:
            deduped.append(value)
    return tuple(deduped)


def _validate_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
