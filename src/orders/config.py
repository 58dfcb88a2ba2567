"""
Order Service Configuration Module

Configuration for the Kafka consumer, PostgreSQL store, order cache and the
retry profiles used at each I/O boundary. Loads settings from environment
variables (and a local .env file) with Pydantic validation.

Durations are in seconds.
"""

from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.shared.backoff import BackoffPolicy

# Load .env file if present (local development)
load_dotenv()

RETRY_PROFILES = ("db_write", "db_read", "broker_read", "persist", "producer_send")


class OrderServiceConfig(BaseSettings):
    """
    Order service configuration with validation.

    Each retry profile is three fields: retry_<profile>_max_elapsed_time,
    retry_<profile>_initial_interval and retry_<profile>_max_interval.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === KAFKA CONSUMER SETTINGS ===
    kafka_bootstrap_servers: str = Field(
        default="localhost:9092",
        description="Kafka broker addresses",
    )

    kafka_topic_orders: str = Field(
        default="orders",
        description="Kafka topic to consume order events from",
    )

    consumer_group_id: str = Field(
        default="orders-group",
        description="Consumer group ID for partition assignment",
    )

    consumer_client_id: str = Field(
        default="order-consumer",
        description="Consumer client identifier",
    )

    consumer_auto_offset_reset: str = Field(
        default="earliest",
        pattern="^(earliest|latest)$",
        description="Where to start consuming: earliest or latest",
    )

    enable_auto_commit: bool = Field(
        default=False,
        description="Auto-commit offsets (False = commit only after persist)",
    )

    kafka_poll_timeout: float = Field(
        default=1.0,
        gt=0,
        le=60,
        description="Seconds one poll may block waiting for a message",
    )

    kafka_dead_letter_topic: Optional[str] = Field(
        default=None,
        description="Topic for unprocessable messages; unset = skip without commit",
    )

    # === DATABASE SETTINGS ===
    postgres_host: str = Field(default="localhost", description="PostgreSQL host")
    postgres_port: int = Field(default=5432, description="PostgreSQL port")
    postgres_db: str = Field(default="orders", description="PostgreSQL database name")
    postgres_user: str = Field(default="postgres", description="PostgreSQL username")
    postgres_password: str = Field(default="postgres", description="PostgreSQL password")

    db_pool_size: int = Field(
        default=5,
        ge=1,
        le=50,
        description="SQLAlchemy connection pool size",
    )

    db_create_schema: bool = Field(
        default=True,
        description="Create the order tables on startup when missing",
    )

    # === CACHE SETTINGS ===
    cache_max_size: int = Field(
        default=1000,
        ge=1,
        description="Maximum number of orders kept in the cache",
    )

    cache_ttl: float = Field(
        default=1800.0,
        gt=0,
        description="Seconds a cached order stays valid after insertion",
    )

    # === RETRY PROFILES ===
    retry_db_write_max_elapsed_time: float = Field(default=5.0, gt=0)
    retry_db_write_initial_interval: float = Field(default=0.1, gt=0)
    retry_db_write_max_interval: float = Field(default=1.0, gt=0)

    retry_db_read_max_elapsed_time: float = Field(default=3.0, gt=0)
    retry_db_read_initial_interval: float = Field(default=0.1, gt=0)
    retry_db_read_max_interval: float = Field(default=0.5, gt=0)

    retry_broker_read_max_elapsed_time: float = Field(default=30.0, gt=0)
    retry_broker_read_initial_interval: float = Field(default=1.0, gt=0)
    retry_broker_read_max_interval: float = Field(default=5.0, gt=0)

    retry_persist_max_elapsed_time: float = Field(default=10.0, gt=0)
    retry_persist_initial_interval: float = Field(default=0.5, gt=0)
    retry_persist_max_interval: float = Field(default=2.0, gt=0)

    retry_producer_send_max_elapsed_time: float = Field(default=15.0, gt=0)
    retry_producer_send_initial_interval: float = Field(default=0.5, gt=0)
    retry_producer_send_max_interval: float = Field(default=3.0, gt=0)

    # === PROCESS ===
    shutdown_timeout: float = Field(
        default=30.0,
        ge=0,
        description="Grace period for in-flight work on shutdown",
    )

    # === LOGGING ===
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log output format (json or text)")

    @model_validator(mode="after")
    def _check_retry_intervals(self) -> "OrderServiceConfig":
        for profile in RETRY_PROFILES:
            initial = getattr(self, f"retry_{profile}_initial_interval")
            maximum = getattr(self, f"retry_{profile}_max_interval")
            if initial > maximum:
                raise ValueError(
                    f"retry_{profile}_initial_interval ({initial}) exceeds "
                    f"retry_{profile}_max_interval ({maximum})"
                )
        return self

    def get_backoff_policy(self, profile: str) -> BackoffPolicy:
        """
        Build the BackoffPolicy for one call site.

        Args:
            profile: One of db_write, db_read, broker_read, persist, producer_send

        Raises:
            ValueError: Unknown profile name
        """
        if profile not in RETRY_PROFILES:
            raise ValueError(f"unknown retry profile: {profile}")
        return BackoffPolicy(
            max_elapsed_time=getattr(self, f"retry_{profile}_max_elapsed_time"),
            initial_interval=getattr(self, f"retry_{profile}_initial_interval"),
            max_interval=getattr(self, f"retry_{profile}_max_interval"),
        )

    def get_kafka_config(self) -> dict:
        """Get Kafka consumer configuration dictionary."""
        return {
            "bootstrap.servers": self.kafka_bootstrap_servers,
            "group.id": self.consumer_group_id,
            "client.id": self.consumer_client_id,
            "auto.offset.reset": self.consumer_auto_offset_reset,
            "enable.auto.commit": self.enable_auto_commit,
        }

    def get_producer_config(self) -> dict:
        """Get Kafka producer configuration for the dead-letter publisher."""
        return {
            "bootstrap.servers": self.kafka_bootstrap_servers,
            "client.id": f"{self.consumer_client_id}-dlq",
            "enable.idempotence": True,
            "acks": "all",
        }

    def get_database_url(self) -> str:
        """Get SQLAlchemy database URL."""
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )


def load_config() -> OrderServiceConfig:
    """Load and validate order service configuration."""
    return OrderServiceConfig()
