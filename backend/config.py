"""Application-wide configuration constants."""

import os
import platform
from pathlib import Path


def _env(name: str, default: str) -> str:
    return os.environ.get(f"PEERDROP_{name}", default)


# --- Identity ---
APP_ID = "peerdrop-v1"
DEVICE_NAME = _env("DEVICE_NAME", platform.node())  # default to hostname

# --- Signaling server ---
API_HOST = _env("API_HOST", "0.0.0.0")
API_PORT = int(_env("API_PORT", "8765"))
SIGNAL_URL = _env("SIGNAL_URL", f"ws://127.0.0.1:{API_PORT}/ws")

# --- Liveness ---
HEARTBEAT_INTERVAL = float(_env("HEARTBEAT_INTERVAL", "15"))  # seconds
ONLINE_WINDOW = float(_env("ONLINE_WINDOW", "30"))  # shown as online
EXPIRY_TIMEOUT = float(_env("EXPIRY_TIMEOUT", "60"))  # removed from registry
SWEEP_INTERVAL = float(_env("SWEEP_INTERVAL", "30"))

# --- Peer connections ---
NEGOTIATION_TIMEOUT = float(_env("NEGOTIATION_TIMEOUT", "30"))
CHANNEL_BIND_HOST = _env("CHANNEL_BIND_HOST", "0.0.0.0")
# Comma separated; empty means detect LAN addresses
ADVERTISE_HOSTS = [h.strip() for h in _env("ADVERTISE_HOSTS", "").split(",") if h.strip()]

# --- Transfer ---
CHUNK_SIZE = int(_env("CHUNK_SIZE", "16384"))  # 16 KB

# --- Storage ---
DEFAULT_SAVE_DIR = _env(
    "SAVE_DIR", str(Path.home() / "Downloads" / "PeerDrop")
)
