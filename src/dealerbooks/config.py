from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Fortnox (OAuth2 app credentials)
    fortnox_client_id: str = ""
    fortnox_client_secret: str = ""
    fortnox_base_url: str = "https://api.fortnox.se"
    fortnox_auth_url: str = "https://apps.fortnox.se/oauth-v1/auth"
    fortnox_token_url: str = "https://apps.fortnox.se/oauth-v1/token"
    fortnox_scope: str = "bookkeeping companyinformation connectfile archive"
    fortnox_redirect_uri: str = "http://localhost:5173/dashboard"
    fortnox_timeout_seconds: int = 30

    # Bookkeeping (BAS-kontoplan)
    fortnox_voucher_series: str = ""  # empty = Fortnox default series
    fortnox_asset_account: int = 1465  # Lager fordon
    fortnox_cash_account: int = 1910  # Kassa
    fortnox_correction_series: str = "A"

    # Object storage for uploaded documents
    storage_path: str = "data/storage"
    purchase_docs_bucket: str = "down-payment-docs"

    # Database
    database_path: str = "data/dealerbooks.db"

    # HTTP API
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    cors_origins: str = "*"  # comma-separated

    # Logging
    log_level: str = "INFO"
    log_json: bool = True
    log_file: str = ""

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


def get_settings() -> Settings:
    return Settings()
