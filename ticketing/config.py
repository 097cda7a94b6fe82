from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_JWT_SECRET = "dev-jwt-secret-change-me"


class Settings(BaseSettings):
    """
    Application configuration (pydantic-settings), read from the
    environment and the ".env" file
    """
    model_config = SettingsConfigDict(env_file=".env",
                                      env_file_encoding="utf-8",
                                      extra="ignore")

    app_name: str = "Event Ticketing API"
    environment: str = "development"

    db_url: str = "mongodb://localhost:27017"
    db_name: str = "ticketingsystem"
    host: str = "0.0.0.0"
    port: int = 8050

    log_level: str = "INFO"
    log_json: bool = False

    cors_origins: List[str] = ["*"]

    # Auth
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    bcrypt_rounds: int = 12
    max_login_attempts: int = 5
    account_lock_minutes: int = 30

    # Ticket QR codes are signed with this key
    qr_signing_secret: str = "dev-qr-secret-change-me"

    # Rate limit rules, "limits" notation
    rate_limit_general: str = "100/15 minutes"
    rate_limit_qr_scan: str = "50/5 minutes"
    rate_limit_manual_verification: str = "30/10 minutes"
    rate_limit_bulk_verification: str = "10/15 minutes"
    rate_limit_login: str = "10/minute"

    # Simulated payments
    default_currency: str = "USD"
    default_gateway: str = "stripe"
    payment_success_rate: float = 0.95
    stripe_secret_key: str = "sk_test_your_stripe_secret_key"
    stripe_mode: str = "test"
    razorpay_key_id: str = "rzp_test_your_razorpay_key_id"
    razorpay_mode: str = "test"
    paypal_client_id: str = "your_paypal_client_id"
    paypal_mode: str = "sandbox"

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    def validate_runtime(self):
        """
        Refuse to boot a production instance with development secrets
        """
        if self.is_production and self.jwt_secret == DEFAULT_JWT_SECRET:
            raise RuntimeError("JWT_SECRET must be changed in production.")
