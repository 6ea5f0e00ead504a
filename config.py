"""
Central configuration for the interest chat relay and client.

Values are read from the environment so deployments can override them
without touching code. None of these affect protocol semantics.
"""

import os

# Relay networking
RELAY_HOST = os.environ.get("RELAY_HOST", "0.0.0.0")
RELAY_PORT = int(os.environ.get("RELAY_PORT", "8000"))

# Logging
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# Client
SERVER_URL = os.environ.get("SERVER_URL", "http://localhost:8000")
RECONNECT_DELAY = float(os.environ.get("RECONNECT_DELAY", "1.0"))  # seconds

# Wire limits
MAX_INTEREST_LENGTH = 64
MAX_DISPLAY_NAME_LENGTH = 32
