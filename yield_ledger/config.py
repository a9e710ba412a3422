"""Configuration management for yield-ledger."""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from yield_ledger.exceptions import ConfigurationError
from yield_ledger.models.ledger.enums import AttributionPolicy


@dataclass
class KafkaConfig:
    """Kafka producer configuration for ledger events."""

    bootstrap_servers: str = "localhost:9092"
    acks: str = "all"
    linger_ms: int = 5
    compression: str = "snappy"
    retries: int = 3
    topic_prefix: str = "ledger"

    def to_dict(self) -> dict[str, Any]:
        """Convert to confluent-kafka config dict."""
        return {
            "bootstrap.servers": self.bootstrap_servers,
            "acks": self.acks,
            "linger.ms": self.linger_ms,
            "compression.type": self.compression,
            "retries": self.retries,
        }

    def topic(self, name: str) -> str:
        """Full topic name for an event family (e.g. ``import-batches``)."""
        return f"{self.topic_prefix}.{name}"


@dataclass
class PostgresConfig:
    """PostgreSQL connection configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "ledger"
    user: str = "postgres"
    password: str = "postgres"

    @property
    def connection_string(self) -> str:
        """Get connection string."""
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


@dataclass
class ImportConfig:
    """Rules applied by the transaction normalizer."""

    allow_account_creation: bool = True
    future_tolerance_days: int = 1
    default_monthly_rate: Decimal = Decimal("0.01")


@dataclass
class AccrualConfig:
    """Yield accrual scheduling rules."""

    period_months: int = 1
    attribution: AttributionPolicy = AttributionPolicy.PER_LOT
    prorate_on_close: bool = False
    default_annual_yield_rate: Decimal = Decimal("0.12")

    def __post_init__(self) -> None:
        if self.period_months not in (1, 2, 3, 4, 6, 12):
            raise ConfigurationError(
                f"period_months must divide a year evenly, got {self.period_months}"
            )


@dataclass
class LedgerConfig:
    """Main configuration for yield-ledger."""

    imports: ImportConfig = field(default_factory=ImportConfig)
    accrual: AccrualConfig = field(default_factory=AccrualConfig)
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    log_level: str = "INFO"
    log_format: str = "standard"

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Create config from environment variables."""
        import os

        def _decimal(name: str, default: str) -> Decimal:
            raw = os.getenv(name, default)
            try:
                return Decimal(raw)
            except InvalidOperation as e:
                raise ConfigurationError(f"{name} is not a decimal: {raw!r}") from e

        def _int(name: str, default: str) -> int:
            raw = os.getenv(name, default)
            try:
                return int(raw)
            except ValueError as e:
                raise ConfigurationError(f"{name} is not an integer: {raw!r}") from e

        attribution_raw = os.getenv("LEDGER_ATTRIBUTION", AttributionPolicy.PER_LOT.value)
        try:
            attribution = AttributionPolicy(attribution_raw.upper())
        except ValueError as e:
            raise ConfigurationError(f"Unknown attribution policy: {attribution_raw!r}") from e

        imports = ImportConfig(
            allow_account_creation=os.getenv("LEDGER_ALLOW_ACCOUNT_CREATION", "true").lower() == "true",
            future_tolerance_days=_int("LEDGER_FUTURE_TOLERANCE_DAYS", "1"),
            default_monthly_rate=_decimal("LEDGER_DEFAULT_MONTHLY_RATE", "0.01"),
        )

        accrual = AccrualConfig(
            period_months=_int("LEDGER_PERIOD_MONTHS", "1"),
            attribution=attribution,
            prorate_on_close=os.getenv("LEDGER_PRORATE_ON_CLOSE", "false").lower() == "true",
            default_annual_yield_rate=_decimal("LEDGER_ANNUAL_YIELD_RATE", "0.12"),
        )

        postgres = PostgresConfig(
            host=os.getenv("POSTGRES_HOST", "localhost"),
            port=_int("POSTGRES_PORT", "5432"),
            database=os.getenv("POSTGRES_DB", "ledger"),
            user=os.getenv("POSTGRES_USER", "postgres"),
            password=os.getenv("POSTGRES_PASSWORD", "postgres"),
        )

        kafka = KafkaConfig(
            bootstrap_servers=os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            topic_prefix=os.getenv("KAFKA_TOPIC_PREFIX", "ledger"),
        )

        return cls(
            imports=imports,
            accrual=accrual,
            postgres=postgres,
            kafka=kafka,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "standard"),
        )
