import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent.parent / ".env")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes")


# Synthesis service. The key is validated at submit time, not at import.
SUNO_API_KEY = os.environ.get("SUNO_API_KEY", "")
SUNO_BASE_URL = os.environ.get("SUNO_BASE_URL", "https://api.sunoapi.org/api/v1")
SUNO_MODEL = os.environ.get("SUNO_MODEL", "V3_5")
SUNO_CUSTOM_MODE = _env_bool("SUNO_CUSTOM_MODE", False)
SUNO_INSTRUMENTAL = _env_bool("SUNO_INSTRUMENTAL", False)
SUNO_CALLBACK_URL = os.environ.get("SUNO_CALLBACK_URL", "https://api.example.com/callback")

# Job polling
POLL_INTERVAL_S = float(os.environ.get("POLL_INTERVAL_S", "2"))
MAX_WAIT_S = float(os.environ.get("MAX_WAIT_S", "300"))

# Cache + preset library
CACHE_MAX_SIZE = int(os.environ.get("CACHE_MAX_SIZE", "10"))
SIMILARITY_THRESHOLD = float(os.environ.get("SIMILARITY_THRESHOLD", "0.8"))
AUTO_SAVE_GENERATED = _env_bool("AUTO_SAVE_GENERATED", True)
PRESET_DIR = Path(os.environ.get("PRESET_DIR", Path.home() / ".scenescore" / "MusicPresets"))
BUNDLED_AUDIO_DIR = os.environ.get("BUNDLED_AUDIO_DIR") or None

# Batch scheduler. The service allows 20 submissions / 10s; keep a margin.
BATCH_MAX_SUBMISSIONS_PER_WINDOW = int(os.environ.get("BATCH_MAX_SUBMISSIONS_PER_WINDOW", "18"))
BATCH_WINDOW_S = float(os.environ.get("BATCH_WINDOW_S", "10"))
BATCH_MAX_CONCURRENT_POLLS = int(os.environ.get("BATCH_MAX_CONCURRENT_POLLS", "20"))
BATCH_IDLE_S = float(os.environ.get("BATCH_IDLE_S", "0.2"))
BATCH_SUBMIT_FAILURE_POLICY = os.environ.get("BATCH_SUBMIT_FAILURE_POLICY", "drop")
BATCH_MAX_REQUEUES = int(os.environ.get("BATCH_MAX_REQUEUES", "2"))

FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:5173")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
