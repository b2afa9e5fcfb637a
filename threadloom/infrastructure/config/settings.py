from typing import Optional
import os

from pydantic import BaseModel, Field


class Settings(BaseModel):
    """Process-level settings"""
    service_name: str = "threadloom"
    log_level: str = "INFO"
    log_format: str = "json"
    checkpoint_dir: Optional[str] = None
    task_dir: Optional[str] = None
    max_tokens: int = Field(default=128000, gt=0)
    task_cleanup_interval: float = Field(default=3600.0, gt=0)
    task_max_age: float = Field(default=7 * 24 * 3600.0, gt=0)
    cors_origins: str = "*"

    @property
    def cors_origin_list(self):
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


ENV_PREFIX = "THREADLOOM_"


def load_settings(**overrides) -> Settings:
    """Read THREADLOOM_* environment variables; keyword overrides win"""

    values = {}
    for name in Settings.model_fields:
        raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None and raw != "":
            values[name] = raw
    values.update(overrides)
    return Settings.model_validate(values)
