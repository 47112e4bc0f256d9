# config.py
import os
from dotenv import load_dotenv

# Load .env before anything reads the environment
load_dotenv()


def _int_env(key: str, default: int) -> int:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _float_env(key: str, default: float) -> float:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    try:
        return float(val)
    except ValueError:
        return default


# ==========================================
# DATABASE
# ==========================================
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./medisarthi.db")

# ==========================================
# PAYMENTS (Razorpay compatible processor)
# ==========================================
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "")
RAZORPAY_API_URL = os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1")
CURRENCY = os.getenv("CURRENCY", "INR")
PROCESSOR_TIMEOUT_SECONDS = _float_env("PROCESSOR_TIMEOUT_SECONDS", 10.0)

# "block": no payment until the prescription is approved
# "hold": payment is verified and parked until the prescription is approved
PRESCRIPTION_GATE = os.getenv("PRESCRIPTION_GATE", "block").strip().lower()

# ==========================================
# NOTIFICATIONS (Telegram)
# ==========================================
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID")
NOTIFY_TIMEOUT_SECONDS = _float_env("NOTIFY_TIMEOUT_SECONDS", 5.0)

# ==========================================
# GEO / SEARCH
# ==========================================
OPENCAGE_API_KEY = os.getenv("OPENCAGE_API_KEY")
GEOCODE_TIMEOUT_SECONDS = _float_env("GEOCODE_TIMEOUT_SECONDS", 5.0)
DEFAULT_SEARCH_RADIUS_KM = _float_env("DEFAULT_SEARCH_RADIUS_KM", 3.0)
NEAREST_FALLBACK_LIMIT = _int_env("NEAREST_FALLBACK_LIMIT", 10)
DEFAULT_SERVICE_RADIUS_KM = _float_env("DEFAULT_SERVICE_RADIUS_KM", 10.0)

# ==========================================
# PRESCRIPTIONS / UPLOADS
# ==========================================
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")

_DEFAULT_SENSITIVE = (
    "alprazolam,clonazepam,codeine,diazepam,fentanyl,ketamine,lorazepam,"
    "methylphenidate,morphine,nitrazepam,oxycodone,pregabalin,tapentadol,"
    "tramadol,zolpidem"
)
SENSITIVE_MEDICINE_KEYWORDS = [
    k.strip().lower()
    for k in os.getenv("SENSITIVE_MEDICINE_KEYWORDS", _DEFAULT_SENSITIVE).split(",")
    if k.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
