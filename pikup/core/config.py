from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

FIRESTORE_URL_TEMPLATE = "https://firestore.googleapis.com/v1/projects/{project_id}/databases/(default)/documents"


class Settings(BaseSettings):
    project_id: str = "pikup-dev"
    document_store_url: Optional[str] = None  # derived from project_id when unset
    api_key: Optional[str] = None
    payment_service_url: str = "https://pikup-server.onrender.com"

    request_timeout: float = 20.0
    connect_timeout: float = 5.0

    # orders
    order_expiry_minutes: int = 4
    extension_minutes: int = 2
    driver_earnings_percentage: float = 0.70
    minimum_driver_earnings: float = 5.00

    # polling (seconds)
    message_poll_interval: float = 2.0
    order_status_poll_interval: float = 5.0
    list_refresh_interval: float = 30.0
    heartbeat_interval: float = 30.0
    expiry_sweep_interval: float = 60.0
    poll_max_attempts: int = Field(3, ge=1)
    poll_retry_delay: float = 1.0

    # presence
    movement_threshold_miles: float = 0.03
    default_radius_miles: float = 10.0

    log_level: str = "INFO"
    log_json: bool = False

    use_inmemory_store: bool = False

    model_config = SettingsConfigDict(env_prefix="PIKUP_", env_file=".env", extra="ignore")

    @property
    def base_url(self) -> str:
        return self.document_store_url or FIRESTORE_URL_TEMPLATE.format(project_id=self.project_id)


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
