"""
Aegis - Global Constants and Protocol Values

This module defines all constants used throughout the Aegis session core.
All magic numbers and configuration defaults are centralized here.

Author: aegischat contributors
Version: 0.3.0
"""

# Version Information
VERSION = "0.3.0"
APP_NAME = "Aegis"

# Cryptography Constants
KEY_SIZE = 32  # 256 bits for X25519 and ChaCha20-Poly1305
NONCE_SIZE = 12  # 96 bits for ChaCha20-Poly1305
TAG_SIZE = 16  # Poly1305 authentication tag
PUBLIC_KEY_SIZE = 32
GENERATION_BYTES = 4  # Nonce prefix
COUNTER_BYTES = 8  # Nonce suffix
MAX_GENERATION = 2 ** (GENERATION_BYTES * 8) - 1
MAX_COUNTER = 2 ** (COUNTER_BYTES * 8) - 1

# HKDF info labels (domain separation)
KDF_LABEL_SHARED = b"aegis-shared-secret-v1"
KDF_LABEL_GENERATION = b"aegis-generation-v1"
KDF_LABEL_REKEY = b"aegis-rekey-v1"
KDF_LABEL_MESSAGE = b"aegis-message-key-v1"
KDF_LABEL_CONFIRM = b"aegis-handshake-confirm-v1"
KDF_LABEL_CONTROL = b"aegis-control-key-v1"
KDF_LABEL_FILE = b"aegis-file-key-v1"

# Session Ratchet Defaults
REKEY_THRESHOLD = 100  # Messages sent per generation before rekeying
MAX_AUTH_FAILURES = 3  # Failed frames before a session is torn down
MAX_REORDER_BUFFER = 64  # Early frames held per session
STATE_HISTORY_SIZE = 100  # Transitions kept per session

# Identity Defaults
FINGERPRINT_LENGTH = 32  # Hex characters shown to users (128 bits)
FINGERPRINT_GROUP_SIZE = 4

# File Transfer Constants
FILE_CHUNK_SIZE = 64 * 1024  # 64 KB chunks
MAX_FILE_SIZE = 100 * 1024 * 1024  # 100 MB
MAX_FILE_ID_LENGTH = 128

# Protocol Constants
PROTOCOL_VERSION = 1
MAX_MESSAGE_SIZE = 10 * 1024 * 1024  # 10 MB

# File Paths
DEFAULT_DATA_DIR = "~/.aegischat"
CONFIG_FILENAME = "config.toml"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
