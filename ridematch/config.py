from pydantic_settings import BaseSettings
from pathlib import Path
import yaml


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://postgres@localhost:5432/ridematch"
    REDIS_URL: str = "redis://localhost:6379/0"

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = -1
    DB_ECHO: bool = False

    MATCH_RADIUS_KM: float = 5.0
    DRIVER_LOCATION_TTL_SEC: int = 300
    RESTRICTED_DRIVER_GENDER: str = "female"

    BID_EXPIRY_SWEEP_SEC: int = 30
    MIN_FARE: float = 250.0

    SHARED_RIDE_CAPACITY: int = 4
    SHARED_RIDE_WINDOW_MIN: int = 15
    SHARED_RIDE_PICKUP_RADIUS_KM: float = 2.0

    COMMISSION_RATE: float = 0.10
    COMMISSION_WAIVER_RIDE_COUNT: int = 1000
    MIN_TIP_AMOUNT: float = 10.0
    CURRENCY: str = "LKR"
    PAYMENT_PROVIDER_URL: str | None = None
    PAYMENT_PROVIDER_TIMEOUT_SEC: float = 10.0

    EVENTS_CHANNEL_PREFIX: str = "ridematch."

    # Load .env located next to this file (ridematch/.env) so defaults are overridden
    model_config = {"env_file": str(Path(__file__).resolve().parent / ".env")}


# yaml section -> {yaml key: settings field}
_YAML_FIELDS = {
    "database": {
        "url": "DATABASE_URL",
        "pool_size": "DB_POOL_SIZE",
        "max_overflow": "DB_MAX_OVERFLOW",
        "pool_timeout": "DB_POOL_TIMEOUT",
        "pool_recycle": "DB_POOL_RECYCLE",
        "echo": "DB_ECHO",
    },
    "redis": {"url": "REDIS_URL"},
    "matching": {
        "radius_km": "MATCH_RADIUS_KM",
        "location_ttl_sec": "DRIVER_LOCATION_TTL_SEC",
        "restricted_driver_gender": "RESTRICTED_DRIVER_GENDER",
    },
    "bidding": {
        "expiry_sweep_sec": "BID_EXPIRY_SWEEP_SEC",
        "min_fare": "MIN_FARE",
    },
    "rides": {
        "shared_capacity": "SHARED_RIDE_CAPACITY",
        "shared_window_min": "SHARED_RIDE_WINDOW_MIN",
        "shared_pickup_radius_km": "SHARED_RIDE_PICKUP_RADIUS_KM",
    },
    "settlement": {
        "commission_rate": "COMMISSION_RATE",
        "commission_waiver_ride_count": "COMMISSION_WAIVER_RIDE_COUNT",
        "min_tip_amount": "MIN_TIP_AMOUNT",
        "currency": "CURRENCY",
        "provider_url": "PAYMENT_PROVIDER_URL",
        "provider_timeout_sec": "PAYMENT_PROVIDER_TIMEOUT_SEC",
    },
    "events": {"channel_prefix": "EVENTS_CHANNEL_PREFIX"},
}


def load_settings() -> Settings:
    """Load settings from application.yaml and merge with environment variables."""
    config_path = Path(__file__).resolve().parent / "application.yaml"

    config_dict = {}

    if config_path.exists():
        with open(config_path, "r") as f:
            yaml_config = yaml.safe_load(f)
        if yaml_config:
            for section, fields in _YAML_FIELDS.items():
                values = yaml_config.get(section) or {}
                for key, field in fields.items():
                    config_dict[field] = values.get(key)

    # Env vars win over yaml: only pass yaml values for fields the environment leaves unset
    settings = Settings(**{k: v for k, v in config_dict.items() if v is not None})
    overridden = Settings()
    for field in overridden.model_fields_set:
        setattr(settings, field, getattr(overridden, field))
    return settings


settings = load_settings()
