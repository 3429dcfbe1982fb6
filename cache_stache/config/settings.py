from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import PydanticBaseSettingsSource


class StacheSettings(BaseSettings):
    ENABLED: bool = True
    BUCKET_SECONDS: int = 300
    RETENTION_SECONDS: int = 604800
    SAMPLE_RATE: float = 1.0
    USE_DEFERRED_FLUSH: bool = False
    MAX_BUCKETS: int = 288
    REDIS_POOL_SIZE: int = 5
    NAMESPACE: str = "cache_stache"
    REDIS_URL: str = Field(
        default="redis://localhost:6379/0",
        validation_alias=AliasChoices("CACHE_STACHE_REDIS_URL", "REDIS_URL"),
    )
    ENVIRONMENT: str = Field(
        default="development",
        validation_alias=AliasChoices("CACHE_STACHE_ENVIRONMENT", "APP_ENV"),
    )

    model_config = SettingsConfigDict(
        env_prefix="CACHE_STACHE_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("ENABLED", "USE_DEFERRED_FLUSH", mode="before")
    @classmethod
    def normalize_flag(cls, value: object) -> bool:
        if isinstance(value, bool):
            return value

        if isinstance(value, str):
            normalized = value.strip().lower()

            true_values = {"1", "true", "yes", "on"}
            false_values = {"0", "false", "no", "off"}

            if normalized in true_values:
                return True
            if normalized in false_values:
                return False

            accepted = sorted(true_values | false_values)
            raise ValueError(
                "Invalid flag value. Accepted values: "
                + ", ".join(accepted)
            )

        raise ValueError("Invalid flag value type. Expected bool or string.")

    @field_validator("ENVIRONMENT", "NAMESPACE", mode="after")
    @classmethod
    def strip_key_segment(cls, value: str) -> str:
        return value.strip()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # init kwargs > OS environment > .env file > file secrets
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )
