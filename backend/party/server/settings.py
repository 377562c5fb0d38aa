"""Party server configuration via environment variables."""

from enum import StrEnum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
from pydantic_settings.sources.base import PydanticBaseSettingsSource

from party.codes import DEFAULT_MAX_ATTEMPTS
from party.reaper import DEFAULT_FINISHED_TTL_SECONDS, DEFAULT_IDLE_TTL_SECONDS, DEFAULT_INTERVAL_SECONDS
from shared.validators import StringListEnvSettingsSource, parse_string_list


class StoreBackend(StrEnum):
    MEMORY = "memory"
    SQLITE = "sqlite"


class PartyServerSettings(BaseSettings):
    model_config = {"env_prefix": "PARTY_"}

    store_backend: StoreBackend = StoreBackend.SQLITE
    database_path: str = Field(default="backend/data/parties.db", min_length=1)
    log_dir: str | None = "backend/logs/party"
    cors_origins: list[str] = []
    code_max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1, le=100)
    finished_party_ttl_seconds: int = Field(default=DEFAULT_FINISHED_TTL_SECONDS, ge=60)
    idle_party_ttl_seconds: int = Field(default=DEFAULT_IDLE_TTL_SECONDS, ge=60)
    reaper_interval_seconds: int = Field(default=DEFAULT_INTERVAL_SECONDS, ge=1)
    max_request_body_size: int = Field(default=4096, ge=256)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def validate_cors_origins(cls, v: str | list[str]) -> list[str]:
        return parse_string_list(v)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return init_settings, StringListEnvSettingsSource(settings_cls), dotenv_settings, file_secret_settings
