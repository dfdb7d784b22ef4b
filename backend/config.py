import os
from dotenv import load_dotenv

load_dotenv()

BACKEND_BASE_URL = os.getenv("BACKEND_BASE_URL", "http://localhost:8787")
BACKEND_TOKEN = os.getenv("BACKEND_TOKEN", "")
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")

YOUTUBE_API_KEYS = os.getenv("YOUTUBE_API_KEYS", os.getenv("YOUTUBE_API_KEY", ""))
YOUTUBE_BASE_URL = os.getenv("YOUTUBE_BASE_URL", "https://www.googleapis.com/youtube/v3")

CACHE_DIR = os.getenv("CACHE_DIR", "/tmp/creator_pulse_cache")

CLIENTS_POLL_INTERVAL = float(os.getenv("CLIENTS_POLL_INTERVAL", "600"))   # 10 minutes
PULSE_POLL_INTERVAL = float(os.getenv("PULSE_POLL_INTERVAL", "1800"))      # 30 minutes
KEY_COOLDOWN_SECONDS = int(os.getenv("KEY_COOLDOWN_SECONDS", "3600"))
MANUAL_SYNC_COOLDOWN_SECONDS = int(os.getenv("MANUAL_SYNC_COOLDOWN_SECONDS", "900"))  # 15 minutes
HISTORY_MAX_SAMPLES = int(os.getenv("HISTORY_MAX_SAMPLES", "30"))
ACTIVITY_WINDOW_HOURS = int(os.getenv("ACTIVITY_WINDOW_HOURS", "24"))
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "30"))

SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes")
PULSE_DEBUG = os.getenv("PULSE_DEBUG", "false").lower() in ("1", "true", "yes")
