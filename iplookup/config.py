"""
Configuration module for the IP Lookup API
"""

# Application configuration
import os
from pathlib import Path

def env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable"""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")

def env_int(key: str, default: int) -> int:
    """Get integer value from environment variable, falling back on garbage"""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default

# Version information
def _read_version_from_repo(default: str = "dev") -> str:
    try:
        # repo root: iplookup/.. (two parents up)
        version_file = Path(__file__).resolve().parents[1] / "VERSION"
        v = version_file.read_text(encoding="utf-8").strip()
        if v:
            return v
    except OSError:
        pass
    return os.getenv("APP_VERSION", default)

API_VERSION = _read_version_from_repo("1.0.0")
APP_NAME = "Self-hosted IP Lookup API"

# Server configuration
PORT = env_int("PORT", 3000)
TRUST_PROXY: bool = env_bool("TRUST_PROXY", False)

# MaxMind distribution point
MAXMIND_LICENSE_KEY = os.getenv("MAXMIND_LICENSE_KEY", "")
MAXMIND_DOWNLOAD_URL = os.getenv(
    "MAXMIND_DOWNLOAD_URL", "https://download.maxmind.com/app/geoip_download"
)

# Editions per database type; keys match DatabaseType values
GEOIP_EDITIONS = {
    "country": os.getenv("GEOIP_EDITION_COUNTRY", "GeoLite2-Country"),
    "city": os.getenv("GEOIP_EDITION_CITY", "GeoLite2-City"),
    "network": os.getenv("GEOIP_EDITION_NETWORK", "GeoLite2-ASN"),
}

# Explicit source URL overrides (mirrors, self-hosted archives)
GEOIP_URLS = {
    "country": os.getenv("GEOIP_URL_COUNTRY", ""),
    "city": os.getenv("GEOIP_URL_CITY", ""),
    "network": os.getenv("GEOIP_URL_NETWORK", ""),
}

# On-disk layout
DATA_DIR = Path(os.getenv("DATA_DIR", "./data"))
SCRATCH_DIR = Path(os.getenv("SCRATCH_DIR", str(DATA_DIR / "tmp")))
PAYLOAD_EXTENSION = ".mmdb"

# Refresh pipeline
DOWNLOAD_TIMEOUT_SEC = env_int("DOWNLOAD_TIMEOUT_SEC", 60)
REFRESH_WORKERS = env_int("REFRESH_WORKERS", 3)
PAYLOAD_SEARCH_DEPTH = env_int("PAYLOAD_SEARCH_DEPTH", 4)

# Seconds between disk checks for databases replaced out of process (0 = off)
DB_RELOAD_INTERVAL_SEC = env_int("DB_RELOAD_INTERVAL_SEC", 60)

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")
LOG_CONFIG = os.getenv("LOG_CONFIG", "LOGGING.yaml")
LOG_SAMPLE_RATE = float(os.getenv("LOG_SAMPLE_RATE", "1.0"))
LOG_EXCLUDE_PATHS = set(os.getenv("LOG_EXCLUDE_PATHS", "/ping,/metrics/prometheus").split(","))
