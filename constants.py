"""
Global constants for filehasher
"""

# Current database schema version
# Version history:
# - v1: File content stored as base64 text in a Base64Strings table
# - v2: File content stored as raw bytes in the Blobs table
CURRENT_DB_VERSION = 2

# Application version
APP_VERSION = "0.2.0"

# Hash algorithm used for new and modified records
DEFAULT_HASH_ALGORITHM = "sha256"

# Worker pool bounds
DEFAULT_THREADS = 4
MIN_THREADS = 1
MAX_THREADS = 16
