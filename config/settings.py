"""Pydantic settings for the txstream command line."""

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

from core.errors import ConfigurationError
from stream.config import (
    BACKOFF_MAX_SECONDS,
    BACKOFF_MIN_SECONDS,
    DEFAULT_QUEUE_SIZE,
    AccountCredentials,
    ClientCertificate,
    StreamConfig,
)
from stream.dedup import DEFAULT_DEDUP_TTL_SECONDS


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Gateway authentication
    account_id: Optional[str] = Field(
        default=None,
        description="Account id for header-token auth"
    )
    secret_hash: Optional[str] = Field(
        default=None,
        description="Secret hash for header-token auth"
    )
    cert_dir: Optional[Path] = Field(
        default=None,
        description="Directory holding external_gateway_cert.pem and external_gateway_key.pem"
    )
    insecure: bool = Field(
        default=False,
        description="Skip gateway certificate verification (certificate auth only)"
    )

    # Gateway endpoint
    ws_url: Optional[str] = Field(
        default=None,
        description="Websocket URL (default depends on auth mode)"
    )

    # Stream tuning
    queue_size: int = Field(
        default=DEFAULT_QUEUE_SIZE,
        description="Output queue capacity"
    )
    dedup_ttl_seconds: float = Field(
        default=DEFAULT_DEDUP_TTL_SECONDS,
        description="Tx hash dedup window (1 min default)"
    )
    backoff_min_seconds: float = Field(
        default=BACKOFF_MIN_SECONDS,
        description="Minimum reconnect delay"
    )
    backoff_max_seconds: float = Field(
        default=BACKOFF_MAX_SECONDS,
        description="Maximum reconnect delay"
    )

    # Output
    output_format: Literal["json", "msgpack"] = Field(
        default="json",
        description="Record encoding written to stdout"
    )
    log_level: str = Field(
        default="WARNING",
        description="Log level for stderr logging"
    )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore"
    }

    def account(self) -> Optional[AccountCredentials]:
        """Account credentials, if configured."""
        if not self.account_id and not self.secret_hash:
            return None
        if not self.account_id:
            raise ConfigurationError("ACCOUNT_ID not set in environment")
        if not self.secret_hash:
            raise ConfigurationError("SECRET_HASH not set in environment")
        return AccountCredentials(account_id=self.account_id, secret_hash=self.secret_hash)

    def to_stream_config(self) -> StreamConfig:
        """Build the immutable stream configuration."""
        certificate = ClientCertificate.from_dir(self.cert_dir) if self.cert_dir else None
        return StreamConfig(
            url=self.ws_url or None,
            certificate=certificate,
            account=self.account(),
            insecure=self.insecure,
            queue_size=self.queue_size,
            dedup_ttl_seconds=self.dedup_ttl_seconds,
            backoff_min_seconds=self.backoff_min_seconds,
            backoff_max_seconds=self.backoff_max_seconds,
        )


# Global settings instance
settings = Settings()
