import os
import logging
from pathlib import Path
from dotenv import load_dotenv, find_dotenv

load_dotenv(find_dotenv(usecwd=True), override=False)

logger = logging.getLogger(__name__)

PACKAGE_ROOT = Path(__file__).resolve().parents[1]


def _env_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name) or default
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


def _env_flag(name: str) -> bool:
    return (os.getenv(name) or "").strip().lower() in {"1", "true", "yes", "on"}


# ---------- Gemini (Text LLM) ----------
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
GEMINI_MODELS = _env_list("GEMINI_MODELS", "gemini-2.5-flash,gemini-3-flash,gemini-2.5-flash-lite")
ALLOW_PLACEHOLDER_STORY = _env_flag("ALLOW_PLACEHOLDER_STORY")

# ---------- SendGrid (mail relay) ----------
SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY")
MAIL_FROM = os.getenv("MAIL_FROM")
ALLOWED_EMAIL_DOMAIN = (os.getenv("ALLOWED_EMAIL_DOMAIN") or "gmail.com").lower()

# ---------- Files ----------
IMAGES_DIR = Path(os.getenv("IMAGES_DIR") or PACKAGE_ROOT.parent / "generated_images")
FRONTEND_DIR = Path(os.getenv("FRONTEND_DIR") or PACKAGE_ROOT.parent / "frontend")
SESSION_MAX_AGE_SECONDS = _env_int("SESSION_MAX_AGE_SECONDS", 6 * 60 * 60)

# ---------- Rendering ----------
RENDER_SETTLE_MS = _env_int("RENDER_SETTLE_MS", 500)
RENDER_NAV_TIMEOUT_MS = _env_int("RENDER_NAV_TIMEOUT_MS", 30000)
BROWSER_LAUNCH_TIMEOUT_MS = _env_int("BROWSER_LAUNCH_TIMEOUT_MS", 60000)
MAX_CONCURRENT_RENDERS = _env_int("MAX_CONCURRENT_RENDERS", 1)
CHROMIUM_EXECUTABLE = os.getenv("CHROMIUM_EXECUTABLE") or None

# ---------- Server ----------
CORS_ORIGINS = _env_list(
    "CORS_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173",
)
HOST = os.getenv("HOST", "0.0.0.0")
PORT = _env_int("PORT", 3000)
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").upper()


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def missing_credentials() -> list[str]:
    missing = []
    if not GEMINI_API_KEY:
        missing.append("GEMINI_API_KEY")
    if not SENDGRID_API_KEY:
        missing.append("SENDGRID_API_KEY")
    if not MAIL_FROM:
        missing.append("MAIL_FROM")
    return missing
