"""Environment-driven settings."""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    """Runtime settings, read from the environment (and a local .env file)."""

    db_path: str = "tether.db"
    db_timeout: float = 5.0
    log_level: str = "INFO"
    log_file: str | None = None
    metrics_port: int | None = None
    fluentd_endpoint: str | None = None
    fluentd_tag: str = "tether"
    requested_by: str = "api"

    @property
    def fluentd_address(self) -> tuple[str, int] | None:
        """Split ``fluentd_endpoint`` into (host, port), or None when disabled."""
        if not self.fluentd_endpoint:
            return None
        if ":" not in self.fluentd_endpoint:
            raise ValueError("fluentd endpoint must be in host:port format (e.g., localhost:24224)")
        host, port_str = self.fluentd_endpoint.rsplit(":", 1)
        if not host:
            raise ValueError("fluentd endpoint host cannot be empty")
        return host, int(port_str)


def _optional_int(value: str | None) -> int | None:
    return int(value) if value else None


def load_settings() -> Settings:
    """Build settings from environment variables."""
    return Settings(
        db_path=os.getenv("TETHER_DB_PATH", "tether.db"),
        db_timeout=float(os.getenv("TETHER_DB_TIMEOUT", "5.0")),
        log_level=os.getenv("TETHER_LOG_LEVEL", "INFO"),
        log_file=os.getenv("TETHER_LOG_FILE") or None,
        metrics_port=_optional_int(os.getenv("TETHER_METRICS_PORT")),
        fluentd_endpoint=os.getenv("TETHER_FLUENTD_ENDPOINT") or None,
        fluentd_tag=os.getenv("TETHER_FLUENTD_TAG", "tether"),
        requested_by=os.getenv("TETHER_REQUESTED_BY", "api"),
    )
