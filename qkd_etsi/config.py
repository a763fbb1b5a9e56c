"""
QKD ETSI Client Configuration

Manages backend selection, credentials and defaults with environment
variable support. Credential paths are validated lazily, per call, so a
role switch always picks up the matching triple.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .etsi004.models import QoS


class Settings(BaseSettings):
    """Library settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Backend selection
    stream_backend: Literal["simulated", "legacy", "rest", "none"] = "simulated"
    vault_backend: Literal["simulated", "rest", "cerberis_xgr", "none"] = "simulated"

    # Vault (ETSI 014) mTLS credentials, selected by role
    qkd_master_cert_path: Optional[Path] = None
    qkd_master_key_path: Optional[Path] = None
    qkd_master_ca_cert_path: Optional[Path] = None
    qkd_slave_cert_path: Optional[Path] = None
    qkd_slave_key_path: Optional[Path] = None
    qkd_slave_ca_cert_path: Optional[Path] = None

    # Single fixed triple for KMEs without role-based certificates (cerberis_xgr)
    qkd_cert_path: Optional[Path] = None
    qkd_key_path: Optional[Path] = None
    qkd_ca_cert_path: Optional[Path] = None

    # KME endpoints
    qkd_master_kme_hostname: str = ""
    qkd_slave_kme_hostname: str = ""
    qkd_master_sae: str = ""
    qkd_slave_sae: str = ""
    kme_dialect: Literal["standard", "qukaydee"] = "standard"
    kme_timeout: float = 30.0
    default_key_size: int = Field(default=256, gt=0)

    # Legacy (ETSI 004) socket client
    client_cert_pem: Optional[Path] = None
    client_cert_key: Optional[Path] = None
    server_cert_pem: Optional[Path] = None
    legacy_connect_timeout: float = 5.0
    metadata_size: int = Field(default=1024, ge=0)

    # Default QoS for stream opens
    qos_key_chunk_size: int = Field(default=32, gt=0)
    qos_max_bps: int = 40000
    qos_min_bps: int = 5000
    qos_jitter: int = 10
    qos_priority: int = 0
    qos_timeout: int = 5000
    qos_ttl: int = 3600
    qos_metadata_mimetype: str = "application/json"

    # Simulated backends
    stream_table_capacity: int = Field(default=16, gt=0)
    vault_max_key_count: int = Field(default=1024, gt=0)
    vault_max_key_per_request: int = Field(default=128, gt=0)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    debug: bool = False

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        """Accept lowercase level names from the environment."""
        return v.upper() if isinstance(v, str) else v

    @field_validator("qos_metadata_mimetype")
    @classmethod
    def validate_mimetype_fits(cls, v: str) -> str:
        """Mime-type travels in a fixed 256-byte wire field."""
        if len(v.encode("utf-8")) > 255:
            raise ValueError("Metadata mime-type must fit in 255 bytes")
        return v

    @model_validator(mode="after")
    def validate_qos_bounds(self) -> "Settings":
        """Default QoS must be admissible, otherwise every stream open fails."""
        if self.qos_min_bps > self.qos_max_bps:
            raise ValueError(
                f"qos_min_bps ({self.qos_min_bps}) must not exceed qos_max_bps ({self.qos_max_bps})"
            )
        return self

    def default_qos(self) -> QoS:
        """QoS block built from the qos_* settings."""
        return QoS(
            key_chunk_size=self.qos_key_chunk_size,
            max_bps=self.qos_max_bps,
            min_bps=self.qos_min_bps,
            jitter=self.qos_jitter,
            priority=self.qos_priority,
            timeout=self.qos_timeout,
            ttl=self.qos_ttl,
            metadata_mimetype=self.qos_metadata_mimetype,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
