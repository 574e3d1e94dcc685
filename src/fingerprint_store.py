"""Persisted content fingerprints for incremental synchronization."""
import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Set

import jsonschema

from src.logging_config import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

CACHE_FILE_NAME = "cache.json"

# `failed` is optional so records written before the flag existed still load.
FINGERPRINT_RECORD_SCHEMA = {
    "type": "object",
    "properties": {
        "source_hash": {"type": "string"},
        "timestamp": {"type": "integer"},
        "languages": {"type": "array", "items": {"type": "string"}},
        "string_hashes": {
            "type": "object",
            "additionalProperties": {"type": "string"}
        },
        "failed": {"type": "boolean"}
    },
    "required": ["source_hash", "timestamp", "languages"]
}


def compute_string_hash(value: str) -> str:
    """Return the SHA-256 hex digest of a string value."""
    return hashlib.sha256(value.encode('utf-8')).hexdigest()


def compute_file_hash(file_path: str) -> str:
    """Return the SHA-256 hex digest of a file's bytes."""
    digest = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            digest.update(chunk)
    return digest.hexdigest()


def current_millis() -> int:
    return int(time.time() * 1000)


@dataclass
class FingerprintRecord:
    """Snapshot of the last run: whole-source hash, per-key hashes and failure flag."""
    source_hash: str
    timestamp: int
    languages: Set[str] = field(default_factory=set)
    string_hashes: Dict[str, str] = field(default_factory=dict)
    failed: bool = False

    def to_dict(self) -> Dict:
        return {
            "source_hash": self.source_hash,
            "timestamp": self.timestamp,
            "languages": sorted(self.languages),
            "string_hashes": dict(self.string_hashes),
            "failed": self.failed,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "FingerprintRecord":
        jsonschema.validate(instance=data, schema=FINGERPRINT_RECORD_SCHEMA)
        return cls(
            source_hash=data["source_hash"],
            timestamp=data["timestamp"],
            languages=set(data["languages"]),
            string_hashes=dict(data.get("string_hashes", {})),
            failed=data.get("failed", False),
        )


class FingerprintStore:
    """Loads and saves the single fingerprint record of one synchronization target."""

    def __init__(self, cache_dir: str):
        self.cache_dir = cache_dir
        self.cache_file = os.path.join(cache_dir, CACHE_FILE_NAME)

    def load(self) -> Optional[FingerprintRecord]:
        """
        Load the persisted record.

        Returns:
            Optional[FingerprintRecord]: The record, or None if it is missing,
            unreadable or does not match the expected schema.
        """
        if not os.path.exists(self.cache_file):
            return None
        try:
            with open(self.cache_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return FingerprintRecord.from_dict(data)
        except json.JSONDecodeError as json_exc:
            logger.debug("Failed to read cache file '%s': %s", self.cache_file, json_exc)
        except jsonschema.ValidationError as schema_exc:
            logger.debug("Cache file '%s' does not match the record schema: %s",
                         self.cache_file, schema_exc.message)
        except (OSError, UnicodeDecodeError) as io_exc:
            logger.debug("Could not open cache file '%s': %s", self.cache_file, io_exc)
        return None

    def save(self, record: FingerprintRecord) -> None:
        os.makedirs(self.cache_dir, exist_ok=True)
        with open(self.cache_file, 'w', encoding='utf-8') as f:
            json.dump(record.to_dict(), f, ensure_ascii=False, indent=2)
        logger.debug("Wrote cache record to '%s' (failed=%s).", self.cache_file, record.failed)

    def cache_state(self) -> str:
        """
        Summarize the record as a short token for up-to-date checks.

        A failed run always yields a new token, so callers that key their
        up-to-date decision on it never skip the retry.
        """
        record = self.load()
        if record is None:
            return "no-cache"
        if record.failed:
            return f"failed-{record.timestamp}"
        return f"success-{record.source_hash}"
