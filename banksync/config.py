from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    database_url: str = "sqlite:///./banksync.db"
    secret_key: str
    log_level: str = "INFO"

    # Where OAuth callbacks send the user back to
    frontend_url: str = "http://localhost:3000"

    # TrueLayer (open banking provider) settings
    truelayer_client_id: str = ""
    truelayer_client_secret: str = ""
    truelayer_redirect_uri: str = "http://localhost:8000/api/banking/callback"
    truelayer_auth_url: str = "https://auth.truelayer.com"
    truelayer_api_url: str = "https://api.truelayer.com"
    truelayer_scopes: str = "info accounts balance transactions offline_access"
    truelayer_providers: str = "uk-ob-all uk-oauth-all"
    provider_timeout_seconds: float = 30.0

    # OAuth state tokens live this long before the callback must arrive
    oauth_state_ttl_minutes: int = 15

    # Sync settings
    default_sync_lookback_days: int = 90
    initial_sync_lookback_days: int = 730
    sync_max_duration_seconds: float = 900

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()
