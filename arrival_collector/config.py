"""
Configuration for the arrival collector
"""
from typing import List

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./arrivals.db"

    # Arrival prediction API (regional open data portal)
    arrival_api_url: str = "https://apis.data.go.kr/6410000/busarrivalservice/v2/getBusArrivalListv2"
    station_api_url: str = "https://apis.data.go.kr/6410000/busstationservice/v2/getBusStationListv2"
    seoul_api_url: str = "http://ws.bus.go.kr/api/rest/stationinfo/getStationByUid"
    arrival_api_key: str = ""
    http_timeout_seconds: float = 10.0
    daily_api_call_limit: int = 10000

    # Scheduler defaults (used until settings are saved to the database)
    default_enabled: bool = False
    default_interval_minutes: int = 15
    default_start_hour: int = 5
    default_end_hour: int = 24

    # Arrival detection
    imminent_threshold_seconds: int = 180
    approach_threshold_seconds: int = 600
    duplicate_window_seconds: int = 180
    fallback_retry_seconds: int = 300
    pending_max_age_seconds: int = 480  # imminent threshold + fallback retry

    # Server
    host: str = "0.0.0.0"
    port: int = 5001
    cors_origins: List[str] = ["*"]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings():
    return Settings()
