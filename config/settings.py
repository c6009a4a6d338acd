import os
from dotenv import load_dotenv

# Load .env when running locally
load_dotenv()


def _optional_int(name):
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else None


class Settings:
    # ─────────────────────────────────────────────
    # Logging
    # ─────────────────────────────────────────────
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE = os.getenv("M3F_LOG_FILE", os.path.join("logs", "offsets.log"))

    # ─────────────────────────────────────────────
    # Sampler Thread Pool
    # ─────────────────────────────────────────────
    # Upper bound on worker threads; one per hardware thread by default
    MAX_THREADS = max(1, int(os.getenv("M3F_MAX_THREADS", os.cpu_count() or 1)))

    # ─────────────────────────────────────────────
    # Random Number Generation
    # ─────────────────────────────────────────────
    # Unset → fresh OS entropy for the default generator pool
    SEED = _optional_int("M3F_SEED")


# IMPORTANT — this is what m3f_sampler imports
settings = Settings()
