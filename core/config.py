# ABOUTME: Shared app configuration and constants used by the API, auth and persistence (core package).
# ABOUTME: Keeps defaults in one place; values can be overridden from the environment or .env.

import os

from dotenv import load_dotenv

load_dotenv()

DEFAULT_GOALS_PAGE_SIZE = 20
MAX_GOALS_PAGE_SIZE = 100

# Auth: SECRET_KEY must be set (e.g. in .env); no default to avoid JWT forgery in production.
_SECRET_KEY = os.environ.get("SECRET_KEY")
if not _SECRET_KEY:
    raise ValueError(
        "SECRET_KEY environment variable must be set. For local dev, add SECRET_KEY=your-secret to .env."
    )
SECRET_KEY = _SECRET_KEY
ALGORITHM = "HS256"
_DEFAULT_ACCESS_TOKEN_EXPIRE_MINUTES = 60
_DEFAULT_WORKFLOW_MAX_RETRIES = 3


def _parse_int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


ACCESS_TOKEN_EXPIRE_MINUTES = _parse_int_env(
    "ACCESS_TOKEN_EXPIRE_MINUTES", _DEFAULT_ACCESS_TOKEN_EXPIRE_MINUTES
)
MIN_PASSWORD_LENGTH = 8
MIN_USERNAME_LENGTH = 1
MAX_USERNAME_LENGTH = 128

# Read-decide-write attempts per workflow request before reporting a conflict.
WORKFLOW_MAX_RETRIES = max(
    1, _parse_int_env("WORKFLOW_MAX_RETRIES", _DEFAULT_WORKFLOW_MAX_RETRIES)
)
MAX_FEEDBACK_LENGTH = 5000
MAX_COMMENT_LENGTH = 2000

# CORS: comma-separated origins. Set in production.
_raw_cors = os.environ.get("CORS_ORIGINS", "http://localhost:5173")
CORS_ORIGINS = [o.strip() for o in _raw_cors.split(",") if o.strip()] or [
    "http://localhost:5173"
]
