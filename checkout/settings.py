import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


@dataclass(frozen=True)
class Settings:
    public_base_url: str
    frontend_base_url: str
    http_timeout: float
    mp_access_token: Optional[str] = None
    mp_webhook_secret: str = ""
    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_base_url: str = "https://api-m.sandbox.paypal.com"
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        public_base_url = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")

        # MP_MODE=test switches to the sandbox credentials
        if os.getenv("MP_MODE", "production") == "test":
            mp_token = os.getenv("MP_ACCESS_TOKEN_TEST")
        else:
            mp_token = os.getenv("MP_ACCESS_TOKEN")

        paypal_env = os.getenv("PAYPAL_ENV", "sandbox").lower()
        paypal_default = (
            "https://api-m.paypal.com" if paypal_env == "live"
            else "https://api-m.sandbox.paypal.com"
        )

        return cls(
            public_base_url=public_base_url,
            frontend_base_url=os.getenv("FRONTEND_BASE_URL", public_base_url).rstrip("/"),
            http_timeout=float(os.getenv("HTTP_TIMEOUT_SECONDS", "15")),
            mp_access_token=mp_token,
            mp_webhook_secret=os.getenv("MP_WEBHOOK_SECRET", ""),
            paypal_client_id=os.getenv("PAYPAL_CLIENT_ID"),
            paypal_client_secret=os.getenv("PAYPAL_CLIENT_SECRET"),
            paypal_base_url=os.getenv("PAYPAL_BASE_URL", paypal_default).rstrip("/"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
        )
