import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./mediatracker.db")

TMDB_API_KEY = os.getenv("TMDB_API_KEY", "")
TMDB_BASE_URL = os.getenv("TMDB_BASE_URL", "https://api.themoviedb.org/3")
CATALOG_REQUEST_TIMEOUT = float(os.getenv("CATALOG_REQUEST_TIMEOUT", "20"))
CATALOG_CACHE_HOURS = float(os.getenv("CATALOG_CACHE_HOURS", "12"))

CATCHUP_CONCURRENCY = int(os.getenv("CATCHUP_CONCURRENCY", "20"))
CATCHUP_INTERVAL_HOURS = float(os.getenv("CATCHUP_INTERVAL_HOURS", "12"))

IMPORT_THROTTLE_EVERY = int(os.getenv("IMPORT_THROTTLE_EVERY", "5"))
IMPORT_THROTTLE_SECONDS = float(os.getenv("IMPORT_THROTTLE_SECONDS", "0.2"))
PENDING_IMPORT_BATCHES = int(os.getenv("PENDING_IMPORT_BATCHES", "20"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
