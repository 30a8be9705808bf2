import logging
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="EMS_", env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./ems.db"
    log_level: str = "INFO"
    cors_origins: List[str] = ["*"]

    # constant | straight_line | osrm
    travel_estimator: str = "constant"
    constant_travel_minutes: float = 10.0
    osrm_url: str = "https://router.project-osrm.org"
    osrm_timeout_seconds: float = 5.0

    dashboard_speed_kmh: float = 50.0
    break_duration_hours: float = 2.0
    min_shift_hours_for_break: float = 12.0
    assignment_attempts: int = 3


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
