"""Application-wide configuration constants.

Every value can be overridden with a ``SKYLINK_*`` environment variable.
"""

import os
import tempfile
from pathlib import Path


def _env(name: str, default: str) -> str:
    return os.environ.get(f"SKYLINK_{name}", default)


# --- Networking ---
API_HOST = _env("API_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("PORT", _env("API_PORT", "8081")))
CONTROL_WORKERS = int(_env("CONTROL_WORKERS", "10"))  # concurrent HTTP requests
CORS_ORIGINS = [o.strip() for o in _env("CORS_ORIGINS", "*").split(",") if o.strip()]

# Ephemeral (dynamic) port range, RFC 6335
TRANSFER_PORT_MIN = int(_env("TRANSFER_PORT_MIN", "49152"))
TRANSFER_PORT_MAX = int(_env("TRANSFER_PORT_MAX", "65535"))
TRANSFER_BIND_HOST = _env("TRANSFER_BIND_HOST", "0.0.0.0")
# Host the relay dials instead of the uploader address, if set
TRANSFER_DIAL_HOST = _env("TRANSFER_DIAL_HOST", "") or None
MAX_BIND_ATTEMPTS = int(_env("MAX_BIND_ATTEMPTS", "10"))

# --- Transfer ---
CHUNK_SIZE = int(_env("CHUNK_SIZE", "4096"))
ACCEPT_TIMEOUT = float(_env("ACCEPT_TIMEOUT", "50"))  # seconds
SEND_TIMEOUT = float(_env("SEND_TIMEOUT", "30"))  # seconds
RELAY_READ_TIMEOUT = float(_env("RELAY_READ_TIMEOUT", "50"))  # seconds per read
OFFER_TTL = float(_env("OFFER_TTL", "600"))  # seconds before an offer is swept
SWEEP_INTERVAL = float(_env("SWEEP_INTERVAL", "60"))

DEFAULT_FILE_NAME = "default.txt"
DEFAULT_DOWNLOAD_NAME = "downloaded-file"

# --- Upload limits ---
MAX_FILE_SIZE = int(_env("MAX_FILE_SIZE", str(500 * 1024 * 1024)))  # 500 MB
MAX_UPLOADS_PER_WINDOW = int(_env("MAX_UPLOADS_PER_WINDOW", "10"))
RATE_LIMIT_WINDOW = float(_env("RATE_LIMIT_WINDOW", "60"))  # seconds
RATE_LIMIT_MAX_KEYS = int(_env("RATE_LIMIT_MAX_KEYS", "10000"))

ALLOWED_EXTENSIONS = (
    ".txt", ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".zip", ".doc", ".docx", ".csv",
)
ALLOWED_MIME_TYPES = (
    "text/plain",
    "application/pdf",
    "image/jpeg",
    "image/png",
    "image/gif",
    "application/zip",
    "application/x-zip-compressed",
    "application/x-zip",
    "application/octet-stream",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/csv",
)

# --- Storage ---
UPLOAD_DIR = _env("UPLOAD_DIR", str(Path(tempfile.gettempdir()) / "SkyLink-uploads"))
os.makedirs(UPLOAD_DIR, exist_ok=True)

# --- Logging ---
LOG_LEVEL = _env("LOG_LEVEL", "INFO").upper()
