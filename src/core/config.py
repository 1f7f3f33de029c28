import os
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file if it exists, for local development
# In production, environment variables should be set directly.
if os.path.exists(".env"):
    from dotenv import load_dotenv
    load_dotenv()


class ReflectionSettings(BaseSettings):
    redis_url: str = "redis://localhost:6379/0"
    draft_namespace: str = "rce:"
    draft_ttl_seconds: Optional[int] = None  # None: drafts are kept until overwritten or cleared

    database_url: str = "sqlite+aiosqlite:///./reflections.db"
    record_store_timeout_seconds: float = 5.0
    record_store_retry_attempts: int = 3

    templates_dir: Optional[str] = None  # None: templates packaged with the engine

    session_idle_seconds: int = 3600  # live machines untouched this long are dropped from memory
    finished_sessions_kept: int = 1024  # submitted sessions (and their results) remembered per process

    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"

    kafka_bootstrap: Optional[str] = None  # None: completion events are not published
    completion_topic: str = "REFLECTION_COMPLETED"

    log_level: str = "INFO"
    service_name: str = "reflection-engine"  # "service" key on every log line

    model_config = SettingsConfigDict(env_prefix="REFLECTION_")


@lru_cache()
def get_settings() -> ReflectionSettings:
    return ReflectionSettings()
