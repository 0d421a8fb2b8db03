from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Meeting Memo Pipeline API"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    fireflies_webhook_secret: str = ""
    granola_webhook_secret: str = ""
    calendar_webhook_secret: str = ""
    default_webhook_user_id: str = ""
    fireflies_api_url: str = "https://api.fireflies.ai/graphql"
    fireflies_api_key: str = ""
    fireflies_api_timeout_seconds: float = 10.0
    fireflies_api_user_agent: str = "MeetingMemoPipeline/1.0"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_api_timeout_seconds: float = 30.0
    google_client_id: str = ""
    google_client_secret: str = ""
    google_drive_api_timeout_seconds: float = 15.0
    google_drive_folder_name: str = "Deal Flow Memos"
    data_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "meeting_memos"
    mongodb_jobs_collection: str = "processing_jobs"
    mongodb_memos_collection: str = "memos"
    mongodb_action_items_collection: str = "tasks"
    mongodb_companies_collection: str = "companies"
    mongodb_integrations_collection: str = "integrations"
    mongodb_connect_timeout_ms: int = 2000
    company_confidence_threshold: float = 0.7
    pending_job_ttl_minutes: int = 60
    completed_job_ttl_minutes: int = 60 * 24
    processing_job_ttl_minutes: int = 10

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("data_store", mode="before")
    @classmethod
    def normalize_data_store(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("fireflies_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_fireflies_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 10.0
        return parsed_value

    @field_validator("gemini_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_gemini_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 30.0
        return parsed_value

    @field_validator("google_drive_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_google_drive_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 15.0
        return parsed_value

    @field_validator("company_confidence_threshold", mode="before")
    @classmethod
    def normalize_company_confidence_threshold(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value < 0 or parsed_value > 1:
            return 0.7
        return parsed_value

    @field_validator("pending_job_ttl_minutes", mode="before")
    @classmethod
    def normalize_pending_job_ttl(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 60
        return parsed_value

    @field_validator("completed_job_ttl_minutes", mode="before")
    @classmethod
    def normalize_completed_job_ttl(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 60 * 24
        return parsed_value

    @field_validator("processing_job_ttl_minutes", mode="before")
    @classmethod
    def normalize_processing_job_ttl(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 10
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
