from __future__ import annotations
from typing import Literal
from pydantic_settings import BaseSettings
from pydantic import Field

class Settings(BaseSettings):
    # Auth (QR display is restricted to this role)
    auth_jwks_url: str = Field("http://localhost:8001/.well-known/jwks.json", alias="AUTH_JWKS_URL")
    token_issuer: str = Field("authentication-svc", alias="TOKEN_ISSUER")
    qr_display_role: str = Field("admin", alias="QR_DISPLAY_ROLE")

    # QR token protocol
    qr_token_window_seconds: int = Field(default=60, alias="QR_TOKEN_WINDOW_SECONDS")
    qr_token_scheme: Literal["single_slot", "append_only"] = Field(default="single_slot", alias="QR_TOKEN_SCHEME")
    qr_token_backend: Literal["redis", "memory"] = Field(default="redis", alias="QR_TOKEN_BACKEND")
    qr_token_key_prefix: str = Field("qrTokens", alias="QR_TOKEN_KEY_PREFIX")
    qr_token_slot: str = Field("current", alias="QR_TOKEN_SLOT")
    qr_issuer_retry_seconds: float = Field(default=5.0, alias="QR_ISSUER_RETRY_SECONDS")
    enable_qr_issuer: bool = Field(default=True, alias="ENABLE_QR_ISSUER")

    # Validator trigger
    trigger_dedup_ttl_seconds: int = Field(default=300, alias="TRIGGER_DEDUP_TTL_SECONDS")

    # Redis
    redis_url: str = Field("redis://127.0.0.1:6379/0", alias="REDIS_URL")

    # NATS
    nats_urls: str = Field("nats://127.0.0.1:4222", alias="NATS_URLS")
    nats_subject_schedule_writes: str = Field("schedules.updated", alias="NATS_SUBJECT_SCHEDULE_WRITES")
    nats_subject_validation: str = Field("checkins.validated", alias="NATS_SUBJECT_VALIDATION")
    enable_nats_consumer: bool = Field(default=True, alias="ENABLE_NATS_CONSUMER")

    # Overtime rules (weekly)
    overtime_threshold_hours: float = Field(default=40.0, alias="OVERTIME_THRESHOLD_HOURS")
    overtime_percent: float = Field(default=50.0, alias="OVERTIME_PERCENT")

    class Config:
        env_file = ".env"
        env_prefix = ""
        case_sensitive = False
        populate_by_name = True

    @property
    def overtime_multiplier(self) -> float:
        return 1 + self.overtime_percent / 100

_settings: Settings | None = None
def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
