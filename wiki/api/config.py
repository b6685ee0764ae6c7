import logging.config
import os

from dotenv import load_dotenv

# Load .env for DB/LLM/session settings
load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./wiki.db")

# Language model (Ollama-compatible HTTP API)
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "llama2")
CHAT_TIMEOUT_SECONDS = float(os.getenv("CHAT_TIMEOUT_SECONDS", "30"))
LLM_REQUEST_TIMEOUT_SECONDS = float(os.getenv("LLM_REQUEST_TIMEOUT_SECONDS", "120"))

# Sessions
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS", "24"))
SESSION_SWEEP_INTERVAL_SECONDS = float(os.getenv("SESSION_SWEEP_INTERVAL_SECONDS", "3600"))
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() == "true"

# Island state
ISLAND_STATE_MAX_AGE_SECONDS = float(os.getenv("ISLAND_STATE_MAX_AGE_SECONDS", "3600"))

# Access control
LANDING_PATH = "/landing"
PUBLIC_ROUTES = (
    "/login",
    "/signup",
    "/api/login",
    "/api/logout",
    "/api/signup",
    LANDING_PATH,
    "/health",
    "/docs",
    "/openapi.json",
)

FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
        },
    },
    "loggers": {
        "wiki": {"level": LOG_LEVEL, "handlers": ["console"], "propagate": False},
    },
    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
}


def configure_logging():
    """Apply the application logging configuration."""
    logging.config.dictConfig(LOGGING_CONFIG)
