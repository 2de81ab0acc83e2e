from pathlib import Path
import os
from dotenv import load_dotenv
from django.core.exceptions import ImproperlyConfigured

# -----------------------------------------------------
# Helpers
# -----------------------------------------------------
def env(name: str, default=None, *, required: bool = False):
    val = os.getenv(name, default)
    if required and (val is None or (isinstance(val, str) and val.strip() == "")):
        raise ImproperlyConfigured(f"Missing required environment variable: {name}")
    return val

def env_bool(name: str, default: bool = False) -> bool:
    return str(os.getenv(name, str(default))).lower() in {"1", "true", "yes", "on"}

def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError as exc:
        raise ImproperlyConfigured(f"{name} must be an integer") from exc

def env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError as exc:
        raise ImproperlyConfigured(f"{name} must be a number") from exc

def env_list(name: str, default: str = "") -> list[str]:
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]

# -----------------------------------------------------
# Paths & basics
# -----------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

DEBUG = env_bool("DEBUG", False)

# In production (DEBUG=False) you must set a strong secret in .env
SECRET_KEY = env("DJANGO_SECRET_KEY", "dev-only-secret-key-change-me", required=not DEBUG)

# Keep hosts explicit by default
ALLOWED_HOSTS = env_list("ALLOWED_HOSTS", "127.0.0.1,localhost,testserver")

# -----------------------------------------------------
# Applications
# -----------------------------------------------------
INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",

    # Third-party
    "rest_framework",

    # Local
    "reels",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "reel_pipeline.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
            ],
        },
    },
]

# -----------------------------------------------------
# Database (Postgres if DB_* env vars set, else SQLite)
# -----------------------------------------------------
if os.getenv("DB_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": env("DB_NAME", "reel_pipeline"),
            "USER": env("DB_USER", "reel_user"),
            "PASSWORD": env("DB_PASSWORD", ""),
            "HOST": env("DB_HOST", "127.0.0.1"),
            "PORT": env("DB_PORT", "5432"),
            "CONN_MAX_AGE": int(env("DB_CONN_MAX_AGE", "60")),  # keep-alive
            "OPTIONS": {
                **({"sslmode": os.getenv("DB_SSLMODE")} if os.getenv("DB_SSLMODE") else {})
            },
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

# -----------------------------------------------------
# Internationalization
# -----------------------------------------------------
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

# -----------------------------------------------------
# Django REST Framework
# -----------------------------------------------------
REST_FRAMEWORK = {
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
    ],
    "DEFAULT_PARSER_CLASSES": [
        "rest_framework.parsers.JSONParser",
    ],
    "UNAUTHENTICATED_USER": None,
}

# -----------------------------------------------------
# Logging
# -----------------------------------------------------
REEL_LOG_LEVEL = env("REEL_LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "pipeline": {
            "format": "%(asctime)s %(levelname)s %(name)s %(threadName)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "pipeline",
        },
    },
    "loggers": {
        "reels": {
            "handlers": ["console"],
            "level": REEL_LOG_LEVEL,
            "propagate": False,
        },
    },
}

# -----------------------------------------------------
# Celery / Redis
# -----------------------------------------------------
CELERY_BROKER_URL = env("CELERY_BROKER_URL", "redis://127.0.0.1:6379/0")
CELERY_RESULT_BACKEND = env("CELERY_RESULT_BACKEND", "redis://127.0.0.1:6379/0")
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = int(env("CELERY_TASK_TIME_LIMIT", str(60 * 60)))  # seconds
CELERY_BEAT_SCHEDULE = {
    "sweep-cleanup": {
        "task": "reels.tasks.sweep_cleanup",
        "schedule": env_float("CLEANUP_INTERVAL_SECONDS", 300.0),
    },
    "sweep-cache": {
        "task": "reels.tasks.sweep_cache",
        "schedule": env_float("CACHE_SWEEP_INTERVAL_SECONDS", 3600.0),
    },
}

# -----------------------------------------------------
# Default PK type
# -----------------------------------------------------
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# -----------------------------------------------------
# S3 / MinIO (env-driven; no hardcoded secrets)
# -----------------------------------------------------
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL") or None  # None -> AWS virtual-hosted URLs
S3_PUBLIC_ENDPOINT = os.getenv("S3_PUBLIC_ENDPOINT", S3_ENDPOINT_URL)
S3_REGION = os.getenv("S3_REGION", "us-east-2")
S3_BUCKET = os.getenv("S3_BUCKET", "reels-local")
S3_ACCESS_KEY = os.getenv("S3_ACCESS_KEY")          # set in .env for local
S3_SECRET_KEY = os.getenv("S3_SECRET_KEY")          # set in .env for local
S3_PRESIGN_EXPIRE_SECONDS = env_int("S3_PRESIGN_EXPIRE_SECONDS", 900)

# -----------------------------------------------------
# Reel production pipeline
# -----------------------------------------------------
REEL_WORK_DIR = Path(env("REEL_WORK_DIR", str(BASE_DIR / "var" / "work")))
REEL_CACHE_DIR = Path(env("REEL_CACHE_DIR", str(BASE_DIR / "var" / "cache")))
REEL_ASSET_ROOT = Path(env("REEL_ASSET_ROOT", str(BASE_DIR / "assets")))
REEL_TEMPLATE_CATALOG = Path(env("REEL_TEMPLATE_CATALOG", str(BASE_DIR / "reels" / "templates.yaml")))
REEL_TEMPLATE_BATCH_SIZE = env_int("REEL_TEMPLATE_BATCH_SIZE", 2)
REEL_PRIMARY_TEMPLATES = env_list(
    "REEL_PRIMARY_TEMPLATES", "storyteller,crescendo,wave,googlezoomintro,wesanderson,hyperpop"
)
REEL_CONVERSION_WORKERS = env_int("REEL_CONVERSION_WORKERS", 4)
REEL_OUTPUT_SIZE = tuple(int(v) for v in env("REEL_OUTPUT_SIZE", "1080x1920").lower().split("x"))
REEL_OUTPUT_FPS = env_int("REEL_OUTPUT_FPS", 24)
REEL_WATERMARK = env("REEL_WATERMARK", "") or None
REEL_WATERMARK_POSITION = env("REEL_WATERMARK_POSITION", "bottom-center")

FFMPEG_BINARY = env("FFMPEG_BINARY", "ffmpeg")
FFPROBE_BINARY = env("FFPROBE_BINARY", "ffprobe")
FFMPEG_MAX_CONCURRENT_JOBS = env_int("FFMPEG_MAX_CONCURRENT_JOBS", 1)
FFMPEG_TIMEOUT_SECONDS = env_float("FFMPEG_TIMEOUT_SECONDS", 15 * 60)
FFMPEG_MAX_RETRIES = env_int("FFMPEG_MAX_RETRIES", 2)

CACHE_LOCK_TTL_SECONDS = env_float("CACHE_LOCK_TTL_SECONDS", 60)
CACHE_LOCK_MAX_ATTEMPTS = env_int("CACHE_LOCK_MAX_ATTEMPTS", 10)
CACHE_LOCK_RETRY_DELAY_SECONDS = env_float("CACHE_LOCK_RETRY_DELAY_SECONDS", 0.5)
CACHE_DEFAULT_TTL_SECONDS = env_float("CACHE_DEFAULT_TTL_SECONDS", 24 * 60 * 60)

CLEANUP_INTERVAL_SECONDS = env_float("CLEANUP_INTERVAL_SECONDS", 300.0)
CLEANUP_TASK_TIMEOUT_SECONDS = env_float("CLEANUP_TASK_TIMEOUT_SECONDS", 30.0)
CLEANUP_MAX_RETRIES = env_int("CLEANUP_MAX_RETRIES", 3)
CLEANUP_BACKGROUND_SWEEP = env_bool("CLEANUP_BACKGROUND_SWEEP", True)

VIDEO_CONVERTER_URL = env("VIDEO_CONVERTER_URL", "")
VIDEO_CONVERTER_TOKEN = env("VIDEO_CONVERTER_TOKEN", "")
MAP_RENDERER_URL = env("MAP_RENDERER_URL", "")
UPSTREAM_TIMEOUT_SECONDS = env_float("UPSTREAM_TIMEOUT_SECONDS", 300.0)
REEL_CANCEL_POLL_SECONDS = env_float("REEL_CANCEL_POLL_SECONDS", 1.0)
