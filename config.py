from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Swiss Ephemeris
    SWEPH_PATH: str = ""                 # empty → built-in Moshier fallback
    EPHEMERIS_MIN_JD: float = 625000.5   # 3000 BC
    EPHEMERIS_MAX_JD: float = 2818000.5  # 3000 AD
    DEFAULT_HOUSE_SYSTEM: str = "P"
    DEFAULT_AYANAMSA: str = ""           # empty → tropical

    # Language models
    OPENAI_API_KEY: str = ""
    PREMIUM_MODEL: str = "gpt-4o"
    BASIC_MODEL: str = "gpt-4o-mini"
    MAX_OUTPUT_TOKENS: int = 4000
    INSIGHT_MAX_ATTEMPTS: int = 2
    INSIGHT_RETRY_BACKOFF_SECONDS: float = 1.0
    INSIGHT_ATTEMPT_TIMEOUT_SECONDS: float = 45.0
    MODEL_PRICING_JSON: str = ""         # '{"gpt-4o": {"input": 2.5, "output": 10.0}}'
    CONVERSATION_HISTORY_LIMIT: int = 10

    # Plan limits (premium is unlimited; insights need credits > 0 on other plans)
    FREE_TRIAL_CHART_LIMIT: int = 1
    BASIC_CHART_LIMIT: int = 3

    # Geolocation
    GOOGLE_MAPS_API_KEY: str = ""
    GEO_CACHE_TTL: int = 86400
    GEO_REQUEST_TIMEOUT: int = 30

    # Redis
    REDIS_URL: str = "redis://localhost:6379"
    REDIS_TRANSIT_TTL: int = 86400  # 24 hours in seconds

    # MongoDB (persistence calls are no-ops until enabled)
    MONGODB_URI: str = "mongodb://localhost:27017"
    MONGODB_DB_NAME: str = "astroinsight"
    MONGODB_ENABLED: bool = False  # Set True when ready to connect

    # Monthly forecast job
    MONTHLY_FORECAST_ENABLED: bool = False
    MONTHLY_FORECAST_DAY: int = 1
    MONTHLY_FORECAST_HOUR: int = 6  # UTC

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "allow"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
