import os
from pathlib import Path
from dotenv import load_dotenv

_BACKEND_ROOT = Path(__file__).resolve().parents[1]
_BACKEND_ENV_PATH = _BACKEND_ROOT / ".env"
load_dotenv(dotenv_path=_BACKEND_ENV_PATH, override=True)


def _env_flag(name: str, default: str = "false") -> bool:
    return str(os.getenv(name, default)).strip().lower() in {"1", "true", "yes", "on"}


OPENAI_API_KEY = str(os.getenv("OPENAI_API_KEY") or "").strip()
PREPARE_AI_MODEL = str(os.getenv("PREPARE_AI_MODEL") or "gpt-4.1-mini").strip()
PREPARE_STT_MODEL = str(os.getenv("PREPARE_STT_MODEL") or "whisper-1").strip()
QA_MODE = _env_flag("QA_MODE")
ENVIRONMENT = str(os.getenv("ENV", "development")).strip().lower()

# turn timing
PREPARE_AI_TIMEOUT_SEC = max(1.0, float(os.getenv("PREPARE_AI_TIMEOUT_SEC", "10")))
PREPARE_STT_TIMEOUT_SEC = max(1.0, float(os.getenv("PREPARE_STT_TIMEOUT_SEC", "30")))
PREPARE_MAX_QUESTIONS = max(1, int(os.getenv("PREPARE_MAX_QUESTIONS", "5")))

# voice reassembly
VOICE_GRACE_PERIOD_SEC = max(1.0, float(os.getenv("VOICE_GRACE_PERIOD_SEC", "30")))
VOICE_MAX_AUDIO_BYTES = max(1024, int(os.getenv("VOICE_MAX_AUDIO_BYTES", str(10 * 1024 * 1024))))
STT_PROVIDER = str(os.getenv("STT_PROVIDER") or "openai").strip().lower()

# persistence
PREPARE_STORE = str(os.getenv("PREPARE_STORE") or "memory").strip().lower()
PREPARE_STORE_PATH = str(
    os.getenv("PREPARE_STORE_PATH") or (_BACKEND_ROOT / "data" / "prepare_store.json")
).strip()

SESSION_CLEANUP_TTL_SEC = max(60, int(os.getenv("SESSION_CLEANUP_TTL_SEC", "1800")))
SESSION_CLEANUP_INTERVAL_SEC = max(5, int(os.getenv("SESSION_CLEANUP_INTERVAL_SEC", "60")))
SESSION_IDLE_TTL_SEC = max(300, int(os.getenv("SESSION_IDLE_TTL_SEC", "3600")))

# auth
PREPARE_JWT_SECRET = str(os.getenv("PREPARE_JWT_SECRET") or "").strip()
ALLOW_UNVERIFIED_AUTH_DEV = _env_flag("ALLOW_UNVERIFIED_AUTH_DEV", "true")

WS_MAX_TEXT_BYTES = max(1024, int(os.getenv("WS_MAX_TEXT_BYTES", str(2 * 1024 * 1024))))
