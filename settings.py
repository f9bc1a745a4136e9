"""
Runtime configuration, read from the environment at import time.
"""
import os
from decimal import Decimal

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = os.getenv("JWT_ALGO", "HS256")
TOKEN_TTL_DAYS = int(os.getenv("TOKEN_TTL_DAYS", 7))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))

CURRENCY = os.getenv("CURRENCY", "INR")
FREE_SHIPPING_THRESHOLD = Decimal(os.getenv("FREE_SHIPPING_THRESHOLD", "1000"))
FLAT_SHIPPING_CHARGE = Decimal(os.getenv("FLAT_SHIPPING_CHARGE", "150"))

REAUTH_TIMEOUT_SECONDS = float(os.getenv("REAUTH_TIMEOUT_SECONDS", 5))
PENDING_CANCELLATION_TTL_SECONDS = float(os.getenv("PENDING_CANCELLATION_TTL_SECONDS", 300))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", 8000))

# optional bootstrap admin, created on startup when missing
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
