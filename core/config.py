"""
Configuration - server and channel settings loaded from the environment.
"""
import json
from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class ServerTlsSettings(BaseModel):
    enabled: bool = False
    cert: Optional[str] = None
    key: Optional[str] = None
    # Client CA bundle; when set, clients must present a certificate (mTLS)
    ca: Optional[str] = None


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    # 0 binds an ephemeral port
    port: int = Field(default=50051, ge=0, le=65535)
    # Graceful drain deadline before in-flight RPCs are cancelled
    shutdown_delay_millis: int = Field(default=5000, ge=0)
    # This maps to GRPC option grpc.max_concurrent_streams
    max_concurrent_streams: int = Field(default=100, ge=1)
    health_enabled: bool = True
    tls: ServerTlsSettings = Field(default_factory=ServerTlsSettings)

    @property
    def shutdown_grace_seconds(self) -> float:
        return self.shutdown_delay_millis / 1000.0


class NegotiationType(str, Enum):
    PLAINTEXT = "PLAINTEXT"
    TLS = "TLS"


class ChannelTlsSettings(BaseModel):
    ca: Optional[str] = None
    cert: Optional[str] = None
    key: Optional[str] = None
    # Overrides the TLS target name, maps to grpc.ssl_target_name_override
    authority: Optional[str] = None


class ChannelSettings(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    negotiation_type: NegotiationType = NegotiationType.PLAINTEXT
    enable_keep_alive: bool = False
    keep_alive_without_calls: bool = False
    # Seconds; 0 leaves the transport default in place
    keep_alive_time: int = Field(default=180, ge=0)
    keep_alive_timeout: int = Field(default=20, ge=0)
    # Bytes; 0 means "use transport default"
    max_inbound_message_size: int = Field(default=0, ge=0)
    full_stream_decompression: bool = False
    # Old transports keep serving in-flight calls this long after a retarget
    drain_grace_millis: int = Field(default=5000, ge=0)
    # Backend host:port entries used by the address resolver
    addresses: Annotated[list[str], NoDecode] = Field(default_factory=list)
    tls: ChannelTlsSettings = Field(default_factory=ChannelTlsSettings)

    @property
    def drain_grace_seconds(self) -> float:
        return self.drain_grace_millis / 1000.0

    @field_validator("negotiation_type", mode="before")
    @classmethod
    def _upper_negotiation_type(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("addresses", mode="before")
    @classmethod
    def _parse_addresses(cls, v):
        """Accept a JSON array or a comma-separated string."""
        if v is None:
            return []
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("[") and s.endswith("]"):
                arr = json.loads(s)
                if isinstance(arr, list):
                    return [str(item).strip() for item in arr if str(item).strip()]
            return [item.strip() for item in s.split(",") if item.strip()]
        return v


class Settings(BaseSettings):
    """Process settings."""

    PROJECT_NAME: str = Field(default="grpc-lifecycle")
    DEBUG: bool = Field(default=False)
    LOG_LEVEL: Optional[str] = Field(default=None, description="Overrides the DEBUG-derived level")
    LOG_JSON: Optional[bool] = Field(default=None, description="Force JSON (true) or console (false) output")

    # Entry point group scanned for exported services by grpc_main
    SERVICE_ENTRY_POINT_GROUP: str = Field(default="grpc_lifecycle.services")

    server: ServerSettings = Field(default_factory=ServerSettings)
    channel: ChannelSettings = Field(default_factory=ChannelSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )


settings = Settings()
