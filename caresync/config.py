import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./caresync.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Slot dates and HH:MM times are stored clinic-local; external events are converted into this zone
CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "UTC")

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# Google Calendar OAuth Configuration
# OAuth flow: Google → Frontend → Frontend sends code to Backend API
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_REDIRECT_URI = os.getenv("GOOGLE_REDIRECT_URI", f"{FRONTEND_URL}/auth/google-calendar")

# Fernet key for refresh tokens at rest (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")
# When unset a key is derived from SECRET_KEY
CALENDAR_TOKEN_ENCRYPTION_KEY = os.getenv("CALENDAR_TOKEN_ENCRYPTION_KEY")

# Seconds before a single external calendar call is abandoned
CALENDAR_REQUEST_TIMEOUT = float(os.getenv("CALENDAR_REQUEST_TIMEOUT", "10"))

# "attendees" (booked when others are invited, blocked when busy) or "available"
CALENDAR_IMPORT_STATUS_POLICY = os.getenv("CALENDAR_IMPORT_STATUS_POLICY", "attendees").lower()

# Provision video links for virtual appointments right after booking
AUTO_MEETING_LINKS = os.getenv("AUTO_MEETING_LINKS", "true").lower() == "true"

# Scheduling limits
MAX_GENERATION_DAYS = int(os.getenv("MAX_GENERATION_DAYS", "366"))
DEFAULT_SYNC_WINDOW_DAYS = int(os.getenv("DEFAULT_SYNC_WINDOW_DAYS", "30"))
