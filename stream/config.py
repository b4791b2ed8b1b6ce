"""Immutable configuration for the transaction stream."""

import base64
import random
import ssl
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from core.backoff import Backoff
from core.errors import ConfigurationError
from .dedup import DEFAULT_DEDUP_MAX_SIZE, DEFAULT_DEDUP_TTL_SECONDS

CLOUD_WS_URL = "wss://api.blxrbdn.com/ws"
ENTERPRISE_WS_URL = "wss://eth.feed.blxrbdn.com:28333"

CERT_FILE_NAME = "external_gateway_cert.pem"
KEY_FILE_NAME = "external_gateway_key.pem"

DEFAULT_QUEUE_SIZE = 100

BACKOFF_MIN_SECONDS = 0.1
BACKOFF_MAX_SECONDS = 5.0
BACKOFF_FACTOR = 2.0


class AuthMode(str, Enum):
    """How the stream authenticates to the gateway."""
    CERTIFICATE = "certificate"
    TOKEN = "token"


class ClientCertificate(BaseModel):
    """TLS client key pair used for certificate authentication."""

    model_config = ConfigDict(frozen=True)

    cert_file: Path
    key_file: Path

    @classmethod
    def from_dir(cls, directory: Union[str, Path]) -> "ClientCertificate":
        """Locate the gateway key pair inside a certificate directory."""
        directory = Path(directory)
        cert_file = directory / CERT_FILE_NAME
        key_file = directory / KEY_FILE_NAME
        for path in (cert_file, key_file):
            if not path.is_file():
                raise ConfigurationError(f"certificate file not found: {path}")
        return cls(cert_file=cert_file, key_file=key_file)

    def ssl_context(self, insecure: bool = False) -> ssl.SSLContext:
        """Build a client TLS context presenting this key pair."""
        context = ssl.create_default_context()
        try:
            context.load_cert_chain(certfile=str(self.cert_file), keyfile=str(self.key_file))
        except (OSError, ssl.SSLError) as e:
            raise ConfigurationError(f"failed to load client certificate: {e}") from e
        if insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context


class AccountCredentials(BaseModel):
    """Account id and secret hash for header-token authentication."""

    model_config = ConfigDict(frozen=True)

    account_id: str = Field(..., min_length=1)
    secret_hash: str = Field(..., min_length=1, repr=False)

    def authorization_header(self) -> str:
        """``base64(account_id + ":" + secret_hash)``"""
        token = f"{self.account_id}:{self.secret_hash}".encode("utf-8")
        return base64.b64encode(token).decode("ascii")


class StreamConfig(BaseModel):
    """
    Everything the stream needs, validated once at construction.

    At least one of ``certificate`` and ``account`` must be given; when both
    are, certificate authentication wins. ``url`` overrides the default
    gateway for the selected authentication mode.
    """

    model_config = ConfigDict(frozen=True)

    url: Optional[str] = Field(default=None, description="Gateway websocket URL override")
    certificate: Optional[ClientCertificate] = None
    account: Optional[AccountCredentials] = None
    insecure: bool = Field(default=False, description="Skip server certificate verification (certificate auth only)")

    queue_size: int = Field(default=DEFAULT_QUEUE_SIZE, ge=1, description="Output queue capacity")
    dedup_ttl_seconds: float = Field(default=DEFAULT_DEDUP_TTL_SECONDS, gt=0, description="Dedup window")
    dedup_max_size: int = Field(default=DEFAULT_DEDUP_MAX_SIZE, ge=1, description="Max hashes held by dedup")

    backoff_min_seconds: float = Field(default=BACKOFF_MIN_SECONDS, ge=0)
    backoff_max_seconds: float = Field(default=BACKOFF_MAX_SECONDS, ge=0)
    backoff_factor: float = Field(default=BACKOFF_FACTOR, ge=1)
    backoff_jitter: bool = True

    open_timeout: Optional[float] = Field(default=10.0, gt=0, description="Websocket opening handshake timeout")
    ping_interval: Optional[float] = Field(default=20.0, gt=0, description="Keepalive ping interval")
    ping_timeout: Optional[float] = Field(default=20.0, gt=0, description="Keepalive pong timeout")
    max_message_size: Optional[int] = Field(default=None, ge=1, description="Max inbound message size, None for unlimited")

    @model_validator(mode="after")
    def _check(self) -> "StreamConfig":
        if self.backoff_max_seconds < self.backoff_min_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_min_seconds")
        if self.certificate is None and self.account is None:
            raise ConfigurationError("no authentication set")
        if self.certificate is not None and self.url and not self.url.startswith("wss://"):
            raise ConfigurationError(f"certificate authentication needs a wss:// url, got {self.url}")
        return self

    @property
    def auth_mode(self) -> AuthMode:
        if self.certificate is not None:
            return AuthMode.CERTIFICATE
        return AuthMode.TOKEN

    @property
    def endpoint(self) -> str:
        """Resolved websocket URL."""
        if self.url:
            return self.url
        if self.auth_mode == AuthMode.CERTIFICATE:
            return ENTERPRISE_WS_URL
        return CLOUD_WS_URL

    def authorization_header(self) -> Optional[str]:
        """Authorization header value in token mode, None otherwise."""
        if self.auth_mode == AuthMode.TOKEN:
            return self.account.authorization_header()
        return None

    def ssl_context(self) -> Optional[ssl.SSLContext]:
        """Client certificate TLS context in certificate mode, None otherwise."""
        if self.auth_mode == AuthMode.CERTIFICATE:
            return self.certificate.ssl_context(insecure=self.insecure)
        return None

    def make_backoff(self, rng: Optional[random.Random] = None) -> Backoff:
        return Backoff(
            min_delay=self.backoff_min_seconds,
            max_delay=self.backoff_max_seconds,
            factor=self.backoff_factor,
            jitter=self.backoff_jitter,
            rng=rng,
        )
