from decimal import Decimal
from functools import lru_cache
from typing import Annotated
import json
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list_value(value: str) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        except ValueError:
            pass
        return [item.strip() for item in raw.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""
    log_level: str = "INFO"

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False
    security_headers_enabled: bool = True

    # --- File storage ---
    storage_backend: str = Field(
        default="local",
        validation_alias=AliasChoices("STORAGE_BACKEND"),
    )
    storage_dir: str = Field(
        default="uploads",
        validation_alias=AliasChoices("STORAGE_DIR", "UPLOAD_DIR"),
    )
    storage_bucket: str = "payroll-documents"
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: str = ""

    # --- AI extraction ---
    ai_allowed_providers_raw: str = Field(
        default="mock,claude,openai",
        validation_alias=AliasChoices("AI_ALLOWED_PROVIDERS"),
    )
    ai_allowed_models_raw: str = Field(
        default="",
        validation_alias=AliasChoices("AI_ALLOWED_MODELS"),
    )
    ai_extract_provider: str = Field(
        default="mock",
        validation_alias=AliasChoices("AI_EXTRACT_PROVIDER"),
    )
    ai_extract_model: str = Field(
        default="",
        validation_alias=AliasChoices("AI_EXTRACT_MODEL"),
    )
    enable_ai_overrides: bool = False
    ai_timeout_seconds: float = 60.0
    ai_max_tokens: int = 8192
    ai_temperature: float = 0.0
    anthropic_api_key: str = ""
    openai_api_key: str = ""

    # --- Upload pipeline ---
    max_upload_bytes: int = Field(
        default=10 * 1024 * 1024,
        validation_alias=AliasChoices("MAX_UPLOAD_BYTES", "MAX_FILE_SIZE"),
    )
    extraction_concurrency: int = 3
    preview_ttl_seconds: int = 30 * 60
    preview_max_sessions: int = 500

    # Separator conventions differ per input source; "1.234" is ambiguous otherwise.
    tabular_locale_hint: str = "es-AR"
    ai_locale_hint: str = "en-US"

    totals_tolerance_pct: Decimal = Decimal("0.0001")
    batch_tolerance_pct: Decimal = Decimal("0.001")
    batch_tolerance_min: Decimal = Decimal("1")

    # --- Audit ---
    pii_redaction_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("PII_REDACTION_ENABLED"),
    )
    pii_redaction_fields: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: [
            "tax_id",
            "address",
            "gross_income_tax_id",
            "account_id",
            "source_account",
        ],
        validation_alias=AliasChoices("PII_REDACTION_FIELDS"),
    )

    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=list)

    @field_validator("cors_allow_origins", "pii_redaction_fields", mode="before")
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def ai_allowed_providers(self) -> list[str]:
        return [item.lower() for item in _parse_list_value(self.ai_allowed_providers_raw)]

    @property
    def ai_allowed_models(self) -> dict[str, list[str]]:
        """Provider -> allowed model names, from a JSON object in AI_ALLOWED_MODELS."""
        raw = (self.ai_allowed_models_raw or "").strip()
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        if not isinstance(parsed, dict):
            return {}
        return {str(key).lower(): _parse_list_value(json.dumps(value)) for key, value in parsed.items()}


@lru_cache

def get_settings() -> Settings:
    return Settings()
