import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a helpful AI assistant. Keep your answers SHORT, CLEAR and PRECISE. "
    "Answer directly without filler introductions. "
    "Most importantly: always decorate your answer with EMOJIS that fit the topic. 🎨✨"
)

HISTORY_LIMIT_MIN = 10
HISTORY_LIMIT_MAX = 20


def _env_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using %d", key, raw, default)
        return default


def _env_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s=%r, using %s", key, raw, default)
        return default


def _env_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    model_name: str = "gpt-4o-mini"
    model_idle_timeout: float = 60.0

    ocr_api_key: Optional[str] = None
    ocr_api_url: str = "https://api.ocr.space/parse/image"
    ocr_language: str = "eng"
    ocr_timeout: float = 30.0

    database_url: Optional[str] = None
    create_tables: bool = True

    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    history_limit: int = 16
    vision_daily_limit: int = 5
    usage_fail_open: bool = True
    max_image_bytes: int = 10 * 1024 * 1024

    cors_origins: list = field(default_factory=lambda: ["*"])
    graphite_host: str = "localhost"
    graphite_port: int = 8125
    metrics_prefix: str = "chatrelay"
    log_level: str = "INFO"

    def __post_init__(self):
        self.history_limit = max(HISTORY_LIMIT_MIN, min(HISTORY_LIMIT_MAX, self.history_limit))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "Settings":
        origins = [o.strip() for o in environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]
        return cls(
            openai_api_key=environ.get("OPENAI_API_KEY") or None,
            openai_base_url=environ.get("OPENAI_BASE_URL") or None,
            model_name=environ.get("MODEL_NAME") or cls.model_name,
            model_idle_timeout=_env_float(environ, "MODEL_IDLE_TIMEOUT", cls.model_idle_timeout),
            ocr_api_key=environ.get("OCR_API_KEY") or None,
            ocr_api_url=environ.get("OCR_API_URL") or cls.ocr_api_url,
            ocr_language=environ.get("OCR_LANGUAGE") or cls.ocr_language,
            ocr_timeout=_env_float(environ, "OCR_TIMEOUT", cls.ocr_timeout),
            database_url=environ.get("DATABASE_URL") or None,
            create_tables=_env_bool(environ, "CREATE_TABLES", cls.create_tables),
            system_instruction=environ.get("SYSTEM_INSTRUCTION") or DEFAULT_SYSTEM_INSTRUCTION,
            history_limit=_env_int(environ, "HISTORY_LIMIT", cls.history_limit),
            vision_daily_limit=_env_int(environ, "VISION_DAILY_LIMIT", cls.vision_daily_limit),
            usage_fail_open=_env_bool(environ, "USAGE_FAIL_OPEN", cls.usage_fail_open),
            max_image_bytes=_env_int(environ, "MAX_IMAGE_BYTES", cls.max_image_bytes),
            cors_origins=origins or ["*"],
            graphite_host=environ.get("GRAPHITE_HOST") or cls.graphite_host,
            graphite_port=_env_int(environ, "GRAPHITE_HOST_PORT", cls.graphite_port),
            metrics_prefix=environ.get("METRICS_PREFIX") or cls.metrics_prefix,
            log_level=(environ.get("LOG_LEVEL") or cls.log_level).upper(),
        )
