"""Core constants used across logstore modules.

This module centralizes file names, format markers and default sizes.
Keeping values here avoids magic literals in business logic.
"""

from __future__ import annotations

from pathlib import Path

DEFAULT_STORE_ROOT = Path(".logstore")
DEFAULT_WRITE_BUFFER_SIZE = 1024 * 1024
DIGEST_READ_CHUNK_SIZE = 1024 * 1024
DECOMPRESS_READ_SIZE = 1024 * 1024

STORE_CORE_DIR_NAME = "core"
STORE_CACHE_DIR_NAME = "cache"
STORE_INCOMING_DIR_NAME = "incoming"

LAYOUT_VERSION = 1
IDENTITY_FILE_NAME = "dataset-identity.yml"
METADATA_FILE_NAME = "dataset-metadata.yml"
IMPORT_TAG_FILE_NAME = ".logstore-import"
EXTERNAL_METADATA_FILE_NAME = "info.yml"
EXTERNAL_METADATA_PREFIX = "roby:"
EXTERNAL_TIME_METADATA_KEY = "roby:time"
TIMESTAMP_METADATA_KEY = "timestamp"
DIGEST_METADATA_KEY = "digest"

POCOLOG_DIR_NAME = "pocolog"
TEXT_DIR_NAME = "text"
IGNORED_DIR_NAME = "ignored"
COMPRESSED_SUFFIX = ".zst"
STREAM_INDEX_SUFFIX = ".idx"
EVENT_LOG_BASENAME = "events"
LEGACY_EVENT_LOG_FILE_NAME = "events.log"
EVENT_SQL_INDEX_FILE_NAME = "events.sql"
RAW_EVENT_LOG_SUFFIX = "-events.log"

ENCODED_DIGEST_LENGTH = 64
HASH_ALGORITHM = "sha256"

IMPORT_STEP_POCOLOG = "pocolog"
IMPORT_STEP_EVENTS = "events"
IMPORT_STEP_EVENTS_NO_INDEX = "events_no_index"
IMPORT_STEP_TEXT = "text"
IMPORT_STEP_IGNORED = "ignored"
IMPORT_DEFAULT_STEPS = (
    IMPORT_STEP_POCOLOG,
    IMPORT_STEP_EVENTS,
    IMPORT_STEP_TEXT,
    IMPORT_STEP_IGNORED,
)
