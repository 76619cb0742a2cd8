import logging
import os

# Environment & Security setup
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
PORT = int(os.getenv("PORT", 8000))

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "schoolway")

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_DAYS = int(os.getenv("ACCESS_TOKEN_EXPIRE_DAYS", 7))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Account lockout
MAX_LOGIN_ATTEMPTS = 5
LOCK_TIME_HOURS = 2
ADMIN_LOCK_HOURS = 24

# One-time tokens
RESET_TOKEN_EXPIRE_HOURS = 1
VERIFY_TOKEN_EXPIRE_HOURS = 24

# Tracking
KM_PER_DEGREE = 111
DEFAULT_RADIUS_KM = 5
STALE_TRACKING_HOURS = 24

# Seed account for the single system admin
SEED_ADMIN_USERNAME = os.getenv("SEED_ADMIN_USERNAME", "systemadmin")
SEED_ADMIN_EMAIL = os.getenv("SEED_ADMIN_EMAIL", "admin@schoolway.com")
SEED_ADMIN_PASSWORD = os.getenv("SEED_ADMIN_PASSWORD", "admin123")


def validate_config():
    if ENVIRONMENT != "production":
        return
    if not os.getenv("SECRET_KEY"):
        raise RuntimeError("SECRET_KEY is required in production")
    if not DATABASE_URL:
        raise RuntimeError("DATABASE_URL is required in production")


def configure_logging(level: str = LOG_LEVEL):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
