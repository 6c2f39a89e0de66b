import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./coursepay.db")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# payments
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "KES")
PAYMENT_TIMEOUT_MINUTES = int(os.getenv("PAYMENT_TIMEOUT_MINUTES", "5"))
TRANSACTION_REF_PREFIX = os.getenv("TRANSACTION_REF_PREFIX", "CPY")

# PayHero (M-Pesa STK push)
PAYHERO_BASE_URL = os.getenv("PAYHERO_BASE_URL", "https://backend.payhero.co.ke/api/v2/payments")
PAYHERO_USERNAME = os.getenv("PAYHERO_USERNAME")
PAYHERO_PASSWORD = os.getenv("PAYHERO_PASSWORD")
PAYHERO_CHANNEL_ID = os.getenv("PAYHERO_CHANNEL_ID")
PAYHERO_CALLBACK_URL = os.getenv("PAYHERO_CALLBACK_URL")
PAYHERO_TIMEOUT_SECONDS = int(os.getenv("PAYHERO_TIMEOUT_SECONDS", "30"))

# progress
VIDEO_COMPLETION_THRESHOLD = int(os.getenv("VIDEO_COMPLETION_THRESHOLD", "80"))
