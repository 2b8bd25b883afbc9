from typing import Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # CodeCheckout API
    API_URL: str = "https://api.riff-tech.com/v1"
    API_TIMEOUT: int = 10

    # Software this installation validates licenses for
    SOFTWARE_ID: str = ""

    # Checkout redirects
    DEFAULT_SUCCESS_URL: str = "https://codecheckout.dev/activate"
    DEFAULT_CANCEL_URL: str = "https://codecheckout.dev"

    # Validation cache
    CACHE_DURATION_HOURS: float = 24
    CACHE_DIR: str = ""  # Defaults to ~/.codecheckout/cache
    SHARED_STORE_URL: str = ""  # SQLAlchemy URL, empty disables the shared store

    # Periodic re-validation
    REVALIDATION_INTERVAL_HOURS: int = 4

    model_config = SettingsConfigDict(env_file=".env", env_prefix="CODECHECKOUT_")

settings = Settings()


class ConfigurationError(ValueError):
    """Raised when a client cannot be configured (no software id anywhere)."""


class ClientConfig(BaseModel):
    softwareId: str
    baseUrl: str = settings.API_URL
    defaultSuccessUrl: Optional[str] = settings.DEFAULT_SUCCESS_URL
    defaultCancelUrl: Optional[str] = settings.DEFAULT_CANCEL_URL


def resolve_config(base: Optional[ClientConfig] = None, **overrides) -> ClientConfig:
    """
    Merge per-call overrides on top of a client's configuration.

    Overrides set to None are ignored. Without a base configuration the
    defaults come from the environment settings. Raises ConfigurationError
    when no software id results from the merge.
    """
    merged = {
        "softwareId": settings.SOFTWARE_ID,
        "baseUrl": settings.API_URL,
        "defaultSuccessUrl": settings.DEFAULT_SUCCESS_URL,
        "defaultCancelUrl": settings.DEFAULT_CANCEL_URL,
    }
    if base is not None:
        merged.update(base.model_dump())
    merged.update({k: v for k, v in overrides.items() if v is not None})

    if not merged.get("softwareId"):
        raise ConfigurationError(
            "softwareId is required. Set CODECHECKOUT_SOFTWARE_ID or pass softwareId explicitly."
        )

    return ClientConfig(**merged)
