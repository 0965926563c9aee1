import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./unionbilling.db")

# Lytex invoicing provider
LYTEX_API_URL = os.getenv("LYTEX_API_URL", "https://api-pay.lytex.com.br/v2")
LYTEX_CLIENT_ID = os.getenv("LYTEX_CLIENT_ID")
LYTEX_CLIENT_SECRET = os.getenv("LYTEX_CLIENT_SECRET")
# Upper bound for every provider call (token exchange, invoice create/lookup/cancel)
LYTEX_TIMEOUT_SECONDS = float(os.getenv("LYTEX_TIMEOUT_SECONDS", "30"))

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Resend Email Configuration
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "Contribuições <noreply@sindicato.app>")
