import logging
from typing import Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings

# Needed before the service can move money; a read-only deployment can run without them
REQUIRED_KEYS = ("DATABASE_URL", "SUBSCRIPTION_CONTRACT_ADDRESS", "PAYER_PRIVATE_KEY")


class Settings(BaseSettings):
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Base mainnet unless overridden
    BASE_RPC_URL: str = "https://mainnet.base.org"
    CHAIN_ID: int = 8453
    SUBSCRIPTION_CONTRACT_ADDRESS: Optional[str] = None
    USDC_CONTRACT_ADDRESS: str = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    PAYER_PRIVATE_KEY: Optional[str] = None

    MONTHLY_CLAMP_POLICY: str = "clamp"  # clamp | roll_forward
    ACTIVITY_FEED_LIMIT: int = 10

    FRONTEND_URL: str = "http://localhost:5173"
    CORS_ORIGINS: str = "http://localhost:5173,http://127.0.0.1:5173"

    model_config = ConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()


def cors_origins(settings_obj: Optional[Settings] = None) -> list[str]:
    raw = (settings_obj or settings).CORS_ORIGINS
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Report missing wiring by key name only; values (keys, DSNs) are never logged.

    Strict mode turns the report into a RuntimeError at startup.
    """
    cfg = settings_obj or settings
    if strict is None:
        strict = getattr(cfg, "CONFIG_STRICT", False)

    missing = [key for key in REQUIRED_KEYS if not getattr(cfg, key, None)]
    if not missing:
        return True

    message = f"Missing required configuration: {', '.join(missing)}"
    if strict:
        raise RuntimeError(message)
    (logger or logging.getLogger("autopay")).warning(message)
    return True
