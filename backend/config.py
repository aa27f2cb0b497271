"""Application-wide configuration constants."""

import os

# --- Identity ---
APP_NAME = "ShareUp"
APP_VERSION = "1.0.0"

# --- Networking ---
API_HOST = os.environ.get("SHAREUP_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("SHAREUP_PORT", "3000"))
ALLOWED_ORIGINS = os.environ.get("SHAREUP_ALLOWED_ORIGINS", "*").split(",")

# STUN/TURN urls handed to peer connections, comma separated
ICE_SERVERS = [
    url.strip()
    for url in os.environ.get("SHAREUP_ICE_SERVERS", "stun:stun.l.google.com:19302").split(",")
    if url.strip()
]

# --- Rooms ---
ROOM_CODE_LENGTH = 8
ROOM_MAX_PARTICIPANTS = 2
ROOM_SWEEP_INTERVAL = 60 * 60  # seconds between expiry sweeps
ROOM_STORE_SHARDS = 64

# Room lifetime per tier, in seconds
ROOM_TTL = {
    "anonymous": 60 * 60,
    "authenticated": 24 * 60 * 60,
    "premium": 7 * 24 * 60 * 60,
}

ANONYMOUS_DAILY_ROOM_LIMIT = int(os.environ.get("SHAREUP_ANON_ROOM_LIMIT", "5"))

# Access tokens that lift a connection out of the anonymous tier,
# given as "token:tier,token:tier"
TIER_TOKENS = dict(
    entry.split(":", 1)
    for entry in os.environ.get("SHAREUP_TIER_TOKENS", "").split(",")
    if ":" in entry
)

# --- Transfer ---
CHUNK_SIZE = 32768  # 32 KB
MAX_FILE_SIZE = 500 * 1024 * 1024  # 500 MB
INTER_FILE_DELAY = 0.5  # seconds between files in a batch
SPEED_UPDATE_INTERVAL = 0.05  # seconds between file-speed-update messages
CONTROL_POLL_INTERVAL = 0.2  # seconds between pause re-checks

# Byte-per-second ceiling per tier; None means unrestricted
TIER_RATE_LIMITS = {
    "anonymous": 30 * 1024,
    "authenticated": 1024 * 1024,
    "premium": None,
}

# Backpressure thresholds (high, low) per tier, in bytes
TIER_WATERMARKS = {
    "anonymous": (262144, 131072),
    "authenticated": (262144, 131072),
    "premium": (2 * 1048576, 1048576),
}

# Buffer drain polling interval per tier, in seconds
TIER_DRAIN_POLL = {
    "anonymous": 0.01,
    "authenticated": 0.01,
    "premium": 0.005,
}

# Exponential moving average smoothing factor per tier
TIER_SPEED_ALPHA = {
    "anonymous": 0.15,
    "authenticated": 0.15,
    "premium": 0.12,
}
