import json
from decimal import Decimal
from typing import List, Optional, Union
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Payflow Checkout Backend"
    env: str = "dev"
    # Also keys the gateway credential cipher.
    secret_key: str

    # DATABASE
    database_url: str
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # CHECKOUT
    checkout_session_ttl_minutes: int = Field(default=30, ge=1, le=10080)
    checkout_extension_minutes: int = Field(default=30, ge=1, le=10080)
    checkout_expiry_sweep_batch_size: int = Field(default=200, ge=1, le=5000)
    order_service_default: str = "stub"

    # PAYMENT GATEWAYS
    reference_code_prefix: str = Field(default="SP", min_length=2, max_length=2)
    gateway_http_timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    sepay_api_base_url: str = "https://my.sepay.vn/userapi"
    sepay_qr_base_url: str = "https://qr.sepay.vn/img"
    sepay_qr_template: str = "compact2"
    sepay_status_lookup_limit: int = Field(default=50, ge=1, le=500)
    stripe_webhook_tolerance_seconds: int = Field(default=300, ge=1, le=3600)
    # Refunds above this amount wait for approval; unset means every refund runs immediately.
    refund_approval_threshold: Optional[Decimal] = Field(default=None, ge=0)

    api_timeout_hint_ms: int = Field(default=30000, ge=1000, le=1_800_000)

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            if not v.strip():
                return []
            if v.startswith("["):
                parsed = json.loads(v)
                if not isinstance(parsed, list):
                    raise ValueError("CORS_ORIGINS JSON value must be a list")
                return [str(i).strip() for i in parsed if str(i).strip()]
            return [i.strip() for i in v.split(",") if i.strip()]
        if isinstance(v, list):
            return [str(i).strip() for i in v if str(i).strip()]
        raise ValueError(v)

    @field_validator("reference_code_prefix", mode="before")
    @classmethod
    def normalize_reference_prefix(cls, value: str) -> str:
        cleaned = str(value or "").strip().upper()
        if not cleaned.isalpha():
            raise ValueError("REFERENCE_CODE_PREFIX must be letters only")
        return cleaned

    @field_validator("sepay_api_base_url", "sepay_qr_base_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return str(value).strip().rstrip("/")

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        weak_secrets = {
            "",
            "change_me",
            "change_me_please_to_a_long_random_string",
            "dev-secret-key-change-before-prod",
        }
        if self.secret_key.strip() in weak_secrets or len(self.secret_key.strip()) < 32:
            raise ValueError("SECRET_KEY must be a strong random value in production")

        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()
