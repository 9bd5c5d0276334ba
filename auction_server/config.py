import os

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} environment variable must be an integer, got {raw!r}")


def _flag_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# HTTP server
HOST = os.getenv("AUCTION_HOST", "127.0.0.1")
PORT = _int_env("AUCTION_PORT", 8001)

# How many times a bid is re-read and re-validated after a version conflict
BID_MAX_RETRIES = _int_env("BID_MAX_RETRIES", 3)
if BID_MAX_RETRIES < 1:
    raise RuntimeError("BID_MAX_RETRIES must be at least 1")

SEED_CATEGORIES = _flag_env("SEED_CATEGORIES", True)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Servers the command-line client probes, in order
SERVERS = [url.strip().rstrip("/") for url in
           os.getenv("AUCTION_SERVERS", f"http://localhost:{PORT}").split(",") if url.strip()]

RECENTLY_CLOSED_LIMIT = 5
