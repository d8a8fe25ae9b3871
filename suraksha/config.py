"""
Configuration module for Suraksha.

Centralizes all configuration with environment variable support.
Components take these values as constructor defaults so tests and
embedding applications can override them per instance.
"""

import os
from pathlib import Path
from typing import Dict, FrozenSet, Optional

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("SURAKSHA_ENV", "dev")  # dev|stage|prod

# Paths
DB_PATH = os.getenv("SURAKSHA_DB_PATH", "data/suraksha.db")
TOKEN_SIGNING_KEY_PATH = os.getenv("TOKEN_SIGNING_KEY_PATH", "secrets/token_signing_key.json")

# Bearer tokens
TOKEN_ISSUER = os.getenv("TOKEN_ISSUER", "suraksha-auth")
TOKEN_AUDIENCE = os.getenv("TOKEN_AUDIENCE", "suraksha-clients")
TOKEN_SIGNING_KID = os.getenv("TOKEN_SIGNING_KID", "suraksha-token-01")
CITIZEN_TOKEN_TTL_SECONDS = int(os.getenv("CITIZEN_TOKEN_TTL_SECONDS", "86400"))
RESPONDER_TOKEN_TTL_SECONDS = int(os.getenv("RESPONDER_TOKEN_TTL_SECONDS", "28800"))

# One-time codes
OTP_LENGTH = int(os.getenv("OTP_LENGTH", "6"))
OTP_TTL_SECONDS = int(os.getenv("OTP_TTL_SECONDS", "300"))
OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", "3"))
OTP_TEST_PHONE_NUMBERS = os.getenv("OTP_TEST_PHONE_NUMBERS", "")
OTP_TEST_CODE = os.getenv("OTP_TEST_CODE", "123456")

# Responder accounts
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
RESPONDER_RECENT_LOGIN_DAYS = int(os.getenv("RESPONDER_RECENT_LOGIN_DAYS", "7"))

# Identity key pairs
RSA_KEY_SIZE = int(os.getenv("RSA_KEY_SIZE", "2048"))

# Listings
HISTORY_DEFAULT_LIMIT = int(os.getenv("HISTORY_DEFAULT_LIMIT", "50"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")
LOG_FILE = os.getenv("LOG_FILE", "")


# ============================================================
# Validation
# ============================================================

def validate_config(db_path: Optional[str] = None, signing_key_path: Optional[str] = None) -> Dict[str, bool]:
    """
    Check that the files the service depends on are in place.
    Returns dict of name -> present.
    """
    paths = {
        "database": db_path or DB_PATH,
        "token_signing_key": signing_key_path or TOKEN_SIGNING_KEY_PATH,
    }
    return {name: Path(path).is_file() for name, path in paths.items()}


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def otp_test_numbers() -> FrozenSet[str]:
    """
    Phone numbers that receive the fixed OTP_TEST_CODE.

    Always empty in production.
    """
    if is_production():
        return frozenset()
    return frozenset(p.strip() for p in OTP_TEST_PHONE_NUMBERS.split(",") if p.strip())
