from functools import lru_cache
import json
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_list_value(value) -> list[str]:
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
        extra="ignore",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False

    jwt_secret: str = Field(
        default="",
        validation_alias=AliasChoices("JWT_SECRET", "SUPABASE_JWT_SECRET"),
    )
    jwt_audience: str = Field(
        default="authenticated",
        validation_alias=AliasChoices("JWT_AUDIENCE", "SUPABASE_JWT_AUDIENCE"),
    )

    supabase_url: str = ""
    supabase_service_role_key: str = ""
    storage_bucket: str = "documents"

    enable_recurring_jobs: bool = False
    enable_retry_scheduler: bool = True
    enable_notification_outbox: bool = True

    retry_sweep_interval_seconds: int = 120
    retry_max_attempts: int = Field(
        default=3,
        validation_alias=AliasChoices("RETRY_MAX_ATTEMPTS", "EXTRACTION_MAX_RETRIES"),
    )
    retry_backoff_base_seconds: int = 60
    retry_backoff_max_seconds: int = 3600

    extraction_timeout_seconds: float = 60.0
    extraction_inline_retries: int = 1

    auto_insert_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    auto_insert_review_fields_raw: str = Field(
        default="",
        validation_alias=AliasChoices("AUTO_INSERT_REVIEW_FIELDS"),
    )

    ai_allowed_providers_raw: str = Field(
        default="mock,openai,claude",
        validation_alias=AliasChoices("AI_ALLOWED_PROVIDERS"),
    )
    ai_extract_provider: str = "mock"
    ai_extract_model: str = ""
    ai_temperature: float = 0.1
    ai_max_tokens: int = 2000
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    health_window_minutes: int = 60
    health_stale_minutes: int = 30

    notification_channel: str = "log"
    notification_email_to: str = ""
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_from_email: str = ""
    notification_worker_interval_seconds: int = 30
    notification_worker_batch_size: int = 50
    notification_worker_max_attempts: int = 5

    @property
    def auto_insert_review_fields(self) -> list[str]:
        return _parse_list_value(self.auto_insert_review_fields_raw)

    @property
    def ai_allowed_providers(self) -> list[str]:
        return [item.lower() for item in _parse_list_value(self.ai_allowed_providers_raw)]


@lru_cache
def get_settings() -> Settings:
    return Settings()
