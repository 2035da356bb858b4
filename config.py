import os

# ----------------------------------------------------------------------------
# Security
# ----------------------------------------------------------------------------
SECRET_KEY = os.getenv("JWT_SECRET", "super-secret-key-change-me")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "60"))
COOKIE_EXPIRE_DAYS = int(os.getenv("JWT_COOKIE_EXPIRE", "30"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

RESET_TOKEN_EXPIRE_MINUTES = int(os.getenv("RESET_TOKEN_EXPIRE_MINUTES", "10"))
# Development only: echo the password-reset token back in the response body
RESET_TOKEN_IN_RESPONSE = os.getenv("RESET_TOKEN_IN_RESPONSE", "false").lower() in ("1", "true", "yes")

# ----------------------------------------------------------------------------
# Runtime
# ----------------------------------------------------------------------------
APP_ENV = os.getenv("APP_ENV", "development")
IS_PRODUCTION = APP_ENV == "production"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
API_PREFIX = os.getenv("API_PREFIX", "/api/v1")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()]

RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX", "100"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(10 * 60)))

# ----------------------------------------------------------------------------
# Database
# ----------------------------------------------------------------------------
# Prefer PostgreSQL if provided, otherwise fall back to SQLite (so server always boots)
_env_db = os.getenv("DATABASE_URL", "").strip()
if _env_db:
    DATABASE_URL = _env_db
else:
    DATABASE_URL = "sqlite+aiosqlite:///./app.db"
