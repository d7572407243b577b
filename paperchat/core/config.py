"""Central configuration for Paper Chat."""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


def _optional_float(name: str) -> float | None:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else None


# ── Paths ──────────────────────────────────────────────────────────────────── #
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.getenv("PAPERCHAT_DATA_DIR", str(PROJECT_ROOT / "data")))
DEFAULT_USER_ID = os.getenv("PAPERCHAT_USER", "local")

# ── Logging ────────────────────────────────────────────────────────────────── #
LOG_LEVEL = os.getenv("PAPERCHAT_LOG_LEVEL", "INFO")

# ── Gemini (analysis + chat) ───────────────────────────────────────────────── #
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")                   # fast / cheap
GEMINI_FALLBACK_MODEL = os.getenv("GEMINI_FALLBACK_MODEL", "gemini-1.5-flash")
GEMINI_TEMPERATURE = float(os.getenv("GEMINI_TEMPERATURE", "0.7"))
GEMINI_TOP_P = float(os.getenv("GEMINI_TOP_P", "0.95"))
GEMINI_TOP_K = int(os.getenv("GEMINI_TOP_K", "40"))
GEMINI_MAX_TOKENS = int(os.getenv("GEMINI_MAX_TOKENS", "8192"))
GEMINI_TIMEOUT = int(os.getenv("GEMINI_TIMEOUT", "120"))                       # seconds per call
GEMINI_MAX_RETRIES = int(os.getenv("GEMINI_MAX_RETRIES", "3"))
GEMINI_SAFETY_THRESHOLD = os.getenv("GEMINI_SAFETY_THRESHOLD", "BLOCK_ONLY_HIGH")

# ── Extraction & chunking ──────────────────────────────────────────────────── #
MIN_READABLE_CHARS = int(os.getenv("MIN_READABLE_CHARS", "20"))
CHUNK_FALLBACK_SIZE = int(os.getenv("CHUNK_FALLBACK_SIZE", "3000"))   # chars per chunk
MIN_CHUNK_CHARS = int(os.getenv("MIN_CHUNK_CHARS", "50"))
FORCE_RECHUNK_CHARS = 5000          # single chunk above this is re-split by size
CONTENT_PREVIEW_CHARS = 5000

# ── Batch analysis ─────────────────────────────────────────────────────────── #
BATCH_SIZE = int(os.getenv("BATCH_SIZE", "2"))
MAX_AGGREGATED_KEYWORDS = 20
AGGREGATE_SUMMARY_CHARS = 1200
RAW_PREVIEW_CHARS = 500

# ── Tiers: requests per window, window length, pause between batches ──────── #
TIER_LIMITS = {
    "free": {"requests": 15, "per_minutes": 1, "delay_between_chunks_ms": 4000},
    "pro": {"requests": 60, "per_minutes": 1, "delay_between_chunks_ms": 1000},
    "enterprise": {"requests": 300, "per_minutes": 1, "delay_between_chunks_ms": 250},
}
DEFAULT_TIER = os.getenv("PAPERCHAT_DEFAULT_TIER", "free")
RATE_LIMIT_SAFETY_MARGIN_MS = int(os.getenv("RATE_LIMIT_SAFETY_MARGIN_MS", "1000"))

# ── Agent ──────────────────────────────────────────────────────────────────── #
MAX_TURNS = int(os.getenv("MAX_TURNS", "5"))
MAX_API_CALLS = int(os.getenv("MAX_API_CALLS", "3"))
DEFAULT_SEARCH_RESULTS = int(os.getenv("DEFAULT_SEARCH_RESULTS", "5"))
CHAT_HISTORY_LIMIT = int(os.getenv("CHAT_HISTORY_LIMIT", "10"))

# ── Cache ──────────────────────────────────────────────────────────────────── #
CACHE_TTL_SECONDS = _optional_float("CACHE_TTL_SECONDS")   # unset → entries never expire
