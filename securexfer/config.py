"""Application-wide configuration constants."""

import os
import socket
from pathlib import Path

# --- Identity ---
APP_NAME = "securexfer"
SERVICE_NAME = "securexfer.local."
# Hostname without any domain suffix, it becomes a single DNS label
DEVICE_NAME = socket.gethostname().split(".")[0] or "securexfer"

CERT_COMMON_NAME = "securexfer.local"
CERT_VALIDITY_DAYS = 365
KEY_SIZE = 2048

# --- Networking ---
API_HOST = os.environ.get("SECUREXFER_API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("SECUREXFER_API_PORT", "8765"))
LISTEN_HOST = "0.0.0.0"  # transfer listener, ephemeral port

MDNS_ADDRESS = "224.0.0.251"
MDNS_PORT = 5353
RECORD_TTL = 120  # seconds

DISCOVERY_INTERVAL = 3  # seconds
PEER_TIMEOUT = 30  # seconds before a peer is considered offline

# Adapter name fragments treated as physical wired/wireless interfaces
PREFERRED_INTERFACES = ("eth", "en", "wlan", "wl", "wi-fi", "wifi", "ethernet")

# --- Transfer ---
CHUNK_SIZE = 131072  # 128 KB
DECISION_TIMEOUT = 30  # seconds to wait for the recipient's decision

# --- Storage ---
DEFAULT_SAVE_DIR = os.environ.get(
    "SECUREXFER_SAVE_DIR", str(Path.home() / "Downloads")
)
DATA_DIR = Path.home() / ".securexfer"
LOG_FILE = DATA_DIR / "debug.log"
