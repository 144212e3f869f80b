"""
Runtime configuration

Everything is read from the environment once at import time. Values that
are missing fall back to development defaults.
"""
import logging
import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
EMAIL_FROM = os.getenv("EMAIL_FROM", "noreply@storefront.local")

# Mock gateway: seconds before the simulated callback fires, and its outcome
# ("success", "failure" or "random").
MPESA_MOCK_DELAY = float(os.getenv("MPESA_MOCK_DELAY", "3"))
MPESA_MOCK_OUTCOME = os.getenv("MPESA_MOCK_OUTCOME", "success")

# Guards the demo seeding endpoint.
ADMIN_KEY = os.getenv("ADMIN_KEY", "demo-admin-key")

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
PORT = int(os.getenv("PORT", "8000"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging():
    logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format=LOG_FORMAT)
