from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Project Feed API"
    app_env: str = "local"
    app_debug: bool = True
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./projectfeed.db"
    timeline_page_size: int = 15
    viewer_timezone: str = "UTC"
    system_actors: list[str] = ["system", "système", "systeme", "automation"]
    files_base_url: str = "/files"
    notifications_enabled: bool = True
    metrics_enabled: bool = False
    otel_enabled: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
