# salonbook/config.py

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/salonbook.db"
    redis_url: str = "redis://localhost:6379/0"

    # Fallback for tenants without an explicit timezone
    default_timezone: str = "Europe/Istanbul"

    # Booking sessions
    session_idle_seconds: int = 900
    terminal_session_ttl_seconds: int = 3600
    commit_guard_seconds: int = 30
    charge_confirmation_seconds: int = 900

    # Eligibility: 0 = only explicit blacklist blocks
    no_show_block_threshold: int = 0

    # One-time code
    otp_required: bool = False
    otp_ttl_seconds: int = 120
    otp_max_attempts: int = 3
    otp_resend_seconds: int = 60

    # PayTR
    paytr_merchant_id: str = ""
    paytr_merchant_key: str = ""
    paytr_merchant_salt: str = ""
    paytr_test_mode: bool = True
    paytr_api_url: str = "https://www.paytr.com/odeme/api/get-token"
    paytr_iframe_url: str = "https://www.paytr.com/odeme/guvenli"
    public_web_url: str = "http://localhost:3000"

    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        extra="ignore",
    )

    @property
    def resolved_database_url(self) -> str:
        url = self.database_url
        if url.startswith("sqlite:///./"):
            # Relative sqlite paths are resolved against the project root
            relative_path = url.replace("sqlite:///./", "")
            absolute_path = BASE_DIR / relative_path
            absolute_path.parent.mkdir(parents=True, exist_ok=True)
            return f"sqlite:///{absolute_path}"
        return url


settings = Settings()
