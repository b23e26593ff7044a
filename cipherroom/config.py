"""
config.py
----------
Runtime settings for the client and relay server.

Defaults live here as module constants; each can be overridden with a
CIPHERROOM_* environment variable so tests and deployments do not need to
edit code.
"""

import logging
import os

# ---------------------------------------------------------------------------
# File transfer
# ---------------------------------------------------------------------------
CHUNK_SIZE = int(os.getenv("CIPHERROOM_CHUNK_SIZE", str(1024 * 1024)))  # 1 MiB raw bytes per chunk
CHUNK_INTERVAL = float(os.getenv("CIPHERROOM_CHUNK_INTERVAL", "0.05"))   # seconds between chunk sends

DOWNLOADS_DIR = os.getenv("CIPHERROOM_DOWNLOADS", os.path.join(os.getcwd(), "downloads"))

# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------
DEFAULT_SERVER_URL = os.getenv("CIPHERROOM_SERVER", "ws://127.0.0.1:8765")
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8765
PING_INTERVAL = 15
PING_TIMEOUT = 45
# Base64 plus JSON framing inflates a 1 MiB chunk to roughly 1.4 MB on the wire.
MAX_FRAME_SIZE = 8 * 1024 * 1024

ROOMS_FILE = os.getenv("CIPHERROOM_ROOMS", "rooms.yaml")
DEFAULT_ROOM_CAPACITY = 2

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_LEVEL = os.getenv("CIPHERROOM_LOG_LEVEL", "WARNING")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger once for CLI entry points."""
    logging.basicConfig(level=(level or LOG_LEVEL).upper(), format=LOG_FORMAT)
