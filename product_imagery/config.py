"""
Configuration module for the Product Image AI service
Contains logger setup and environment variables
"""

import os
import logging
from typing import List

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


# -------------------------
# Logger Setup
# -------------------------
LOG_FILE = os.getenv("LOG_FILE", "product_imagery.log")


def setup_logger(name: str = __name__, log_file: str = LOG_FILE) -> logging.Logger:
    """
    Set up and return a logger with both file and console handlers

    Args:
        name: Logger name (usually __name__)
        log_file: Path to log file. An empty value disables the file handler.

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)

    # Avoid adding duplicate handlers
    if logger.handlers:
        return logger

    # Create formatter
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # File handler
    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


# Create the main application logger
logger = setup_logger("product_imagery")


# -------------------------
# Parsing helpers
# -------------------------
def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        parsed = int(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring invalid integer for {name}: {raw!r}")
        return default
    return parsed if parsed > 0 else default


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in ("false", "0", "no", "off")


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name) or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


def _first_env(*names: str) -> str | None:
    for name in names:
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    return None


# -------------------------
# Environment Variables
# -------------------------
GEMINI_API_KEY = _first_env(
    "GEMINI_API_KEY",
    "GEMINI_KEY",
    "GOOGLE_API_KEY",
    "GOOGLE_GENERATIVE_AI_API_KEY",
)
APP_SECRET = os.getenv("APP_SECRET")  # Shared secret for the admin console

# gemini image generation
GEMINI_API_BASE_URL = os.getenv(
    "GEMINI_API_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
)
GEMINI_IMAGE_MODEL = (os.getenv("GEMINI_IMAGE_MODEL") or "").strip() or None
GEMINI_IMAGE_FALLBACK_MODELS = _env_list("GEMINI_IMAGE_FALLBACK_MODELS")
GEMINI_IMAGE_ASPECT_RATIO = os.getenv("GEMINI_IMAGE_ASPECT_RATIO", "3:4")
GEMINI_IMAGE_SIZE = os.getenv("GEMINI_IMAGE_SIZE", "2K")
GEMINI_REQUEST_TIMEOUT_SECONDS = float(_env_int("GEMINI_REQUEST_TIMEOUT_SECONDS", 120))
MAX_REFERENCE_IMAGES = _env_int("GEMINI_IMAGE_MAX_REFERENCE_IMAGES", 3)
MAX_TOTAL_REFERENCE_BYTES = _env_int(
    "GEMINI_IMAGE_MAX_TOTAL_BYTES", 12 * 1024 * 1024
)

# transparency enforcement
TRANSPARENCY_PASS_ENABLED = _env_flag("GEMINI_IMAGE_TRANSPARENCY_PASS", True)
LOCAL_CUTOUT_ENABLED = _env_flag("GEMINI_IMAGE_LOCAL_CUTOUT", False)

# output post-processing
UPSCALE_ENABLED = _env_flag("GEMINI_IMAGE_UPSCALE", True)
OUTPUT_MIN_LONG_EDGE = _env_int("OUTPUT_MIN_LONG_EDGE", 2048)

# background removal providers
DEFAULT_PROVIDER_TIMEOUT_MS = 20_000
MAX_PROVIDER_TIMEOUT_MS = 60_000


def get_provider_timeout_ms(name: str) -> int:
    """Read a provider timeout in milliseconds, capped at 60s."""
    return min(_env_int(name, DEFAULT_PROVIDER_TIMEOUT_MS), MAX_PROVIDER_TIMEOUT_MS)


BACKGROUND_REMOVAL_TIMEOUT_MS = get_provider_timeout_ms("BACKGROUND_REMOVAL_TIMEOUT_MS")
REMOVEBG_TIMEOUT_MS = get_provider_timeout_ms("REMOVEBG_TIMEOUT_MS")
CLIPDROP_TIMEOUT_MS = get_provider_timeout_ms("CLIPDROP_TIMEOUT_MS")

# supabase (remote secret store)
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_KEY = os.getenv("SUPABASE_SERVICE_KEY")


# Log configuration status
logger.info("Configuration loaded successfully")
logger.debug(f"GEMINI_API_KEY configured: {bool(GEMINI_API_KEY)}")
logger.debug(f"GEMINI_IMAGE_MODEL override: {GEMINI_IMAGE_MODEL}")
logger.debug(f"APP_SECRET configured: {bool(APP_SECRET)}")
logger.debug(f"SUPABASE_URL configured: {bool(SUPABASE_URL)}")
logger.debug(f"SUPABASE_SERVICE_KEY configured: {bool(SUPABASE_SERVICE_KEY)}")
logger.debug(f"Local cutout enabled: {LOCAL_CUTOUT_ENABLED}")
