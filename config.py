import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "agentbuy")
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Outbound mail (Resend)
RESEND_API_KEY = (os.getenv("RESEND_API_KEY") or "").strip()
EMAIL_FROM = os.getenv("EMAIL_FROM", "AgentBuy <no-reply@agentbuy.app>")
DAILY_EMAIL_LIMIT = int(os.getenv("DAILY_EMAIL_LIMIT", 450))
# the mail day rolls over at this local hour, not at midnight
EMAIL_DAY_START_HOUR = int(os.getenv("EMAIL_DAY_START_HOUR", 6))

# Image host (unsigned upload endpoint)
CLOUDINARY_UPLOAD_URL = os.getenv("CLOUDINARY_UPLOAD_URL", "")
CLOUDINARY_UPLOAD_PRESET = os.getenv("CLOUDINARY_UPLOAD_PRESET", "")

SCHEDULER_INTERVAL_SEC = float(os.getenv("SCHEDULER_INTERVAL_SEC", 60))
