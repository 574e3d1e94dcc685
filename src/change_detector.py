"""Classify source entries against the last fingerprint record."""
import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from src.fingerprint_store import FingerprintRecord, compute_string_hash


class EntryKind(enum.Enum):
    PLAIN = "plain"
    HASHED = "hashed"


@dataclass(frozen=True)
class SubmissionEntry:
    """
    One string submitted for translation.

    A PLAIN entry carries only the text. A HASHED entry also carries the
    value hash so the service can deduplicate work it has already done.
    """
    kind: EntryKind
    value: str
    hash: Optional[str] = None

    def __post_init__(self):
        if self.kind is EntryKind.HASHED and not self.hash:
            raise ValueError("A hashed submission entry requires a hash.")
        if self.kind is EntryKind.PLAIN and self.hash is not None:
            raise ValueError("A plain submission entry must not carry a hash.")

    @classmethod
    def plain(cls, value: str) -> "SubmissionEntry":
        return cls(EntryKind.PLAIN, value)

    @classmethod
    def hashed(cls, value: str, value_hash: str) -> "SubmissionEntry":
        return cls(EntryKind.HASHED, value, value_hash)

    def to_wire(self) -> Union[str, Dict[str, str]]:
        if self.kind is EntryKind.HASHED:
            return {"value": self.value, "hash": self.hash}
        return self.value


@dataclass
class ChangeSet:
    submission: Dict[str, SubmissionEntry] = field(default_factory=dict)
    new_keys: List[str] = field(default_factory=list)
    modified_keys: List[str] = field(default_factory=list)
    removed_keys: List[str] = field(default_factory=list)
    current_hashes: Dict[str, str] = field(default_factory=dict)
    full_resubmission: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.submission and not self.removed_keys


def detect_changes(strings: Dict[str, str], prior: Optional[FingerprintRecord]) -> ChangeSet:
    """
    Work out which entries need translation.

    Without a usable prior record (missing, or left failed by the previous
    run) every entry is submitted and nothing counts as removed, since the
    prior key set cannot be trusted after a partial write.

    Args:
        strings (Dict[str, str]): Current source entries in source order.
        prior (Optional[FingerprintRecord]): The record from the last run.

    Returns:
        ChangeSet: Submission set, per-category keys and the current hashes.
    """
    current_hashes = {key: compute_string_hash(value) for key, value in strings.items()}

    if prior is None or prior.failed:
        submission = {
            key: SubmissionEntry.hashed(value, current_hashes[key])
            for key, value in strings.items()
        }
        return ChangeSet(
            submission=submission,
            current_hashes=current_hashes,
            full_resubmission=True,
        )

    changes = ChangeSet(current_hashes=current_hashes)
    for key, value in strings.items():
        previous_hash = prior.string_hashes.get(key)
        current_hash = current_hashes[key]
        if previous_hash is None:
            changes.new_keys.append(key)
        elif previous_hash != current_hash:
            changes.modified_keys.append(key)
        else:
            continue
        changes.submission[key] = SubmissionEntry.hashed(value, current_hash)

    changes.removed_keys = [key for key in prior.string_hashes if key not in current_hashes]
    return changes
