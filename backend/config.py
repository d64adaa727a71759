"""Application-wide configuration constants."""

import platform

# --- Identity ---
APP_TAG = "LANCHAT:"  # prefix of every discovery datagram
DEVICE_NAME = platform.node() or "lanchat"  # default identity, user can override

# --- Networking ---
API_HOST = "127.0.0.1"  # local presentation bridge
API_PORT = 8765
RELAY_HOST = "0.0.0.0"
RELAY_PORT = 8080  # TCP, well-known relay port
DISCOVERY_PORT = 8888  # UDP
BEACON_INTERVAL = 5  # seconds between advertisements
DISCOVERY_TIMEOUT = 10  # seconds a discovery window stays open
REQUEST_TIMEOUT = 5.0  # seconds for any relay HTTP call
MAX_DATAGRAM_SIZE = 1024  # larger datagrams are never beacons
