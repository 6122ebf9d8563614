from __future__ import annotations

import pickle

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from facegate.config import REFERENCE_CACHE_FILENAME, REFERENCE_CACHE_SCHEMA


def _freeze(descriptor: np.ndarray) -> np.ndarray:
    vec = np.array(descriptor, dtype=np.float32, copy=True).reshape(-1)
    vec.setflags(write=False)
    return vec


@dataclass(frozen=True)
class LabeledDescriptor:
    """One identity and every descriptor extracted from its reference photos."""

    identity_id: str
    descriptors: Tuple[np.ndarray, ...]

    @classmethod
    def create(cls, identity_id: str, descriptors: Iterable[np.ndarray]) -> "LabeledDescriptor":
        frozen = tuple(_freeze(d) for d in descriptors)
        if not frozen:
            raise ValueError(f"identity {identity_id!r} has no descriptors")
        return cls(identity_id=str(identity_id), descriptors=frozen)


class ReferenceSet:
    """Immutable, ordered collection of labeled descriptors.

    Iteration order is the order identities were first seen while building, and
    it is the tie-break order used by the matcher. A rebuild always produces a
    new instance; nothing here mutates after construction.
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Sequence[LabeledDescriptor] = ()):
        self._entries: Tuple[LabeledDescriptor, ...] = tuple(entries)

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, np.ndarray]]) -> "ReferenceSet":
        """Group `(identity_id, descriptor)` pairs by identity, keeping first-seen order."""
        grouped: Dict[str, List[np.ndarray]] = {}
        for identity_id, descriptor in pairs:
            grouped.setdefault(str(identity_id), []).append(descriptor)
        return cls([LabeledDescriptor.create(k, v) for k, v in grouped.items()])

    def __iter__(self) -> Iterator[LabeledDescriptor]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return self.descriptor_count > 0

    def __repr__(self) -> str:
        return f"ReferenceSet(identities={len(self._entries)}, descriptors={self.descriptor_count})"

    @property
    def identities(self) -> List[str]:
        return [e.identity_id for e in self._entries]

    @property
    def descriptor_count(self) -> int:
        return sum(len(e.descriptors) for e in self._entries)

    @property
    def dim(self) -> int:
        if not self._entries:
            return 0
        return int(self._entries[0].descriptors[0].shape[0])

    def save(self, cache_dir: Path, filename: str = REFERENCE_CACHE_FILENAME) -> Path:
        cache_dir = Path(cache_dir)
        cache_dir.mkdir(parents=True, exist_ok=True)
        fp = cache_dir / filename
        data = {
            "schema_version": REFERENCE_CACHE_SCHEMA,
            "entries": [(e.identity_id, [np.asarray(d) for d in e.descriptors]) for e in self._entries],
        }
        with open(fp, "wb") as f:
            pickle.dump(data, f)
        return fp

    @classmethod
    def load(cls, cache_dir: Path, filename: str = REFERENCE_CACHE_FILENAME) -> Optional["ReferenceSet"]:
        """Load a cached set; returns None when missing or written by another schema."""
        fp = Path(cache_dir) / filename
        if not fp.exists():
            return None
        with open(fp, "rb") as f:
            data = pickle.load(f)

        if not isinstance(data, dict) or data.get("schema_version") != REFERENCE_CACHE_SCHEMA:
            return None

        entries = []
        for identity_id, descriptors in data.get("entries") or []:
            if descriptors:
                entries.append(LabeledDescriptor.create(identity_id, descriptors))
        return cls(entries)

    @staticmethod
    def remove_cache(cache_dir: Path, filename: str = REFERENCE_CACHE_FILENAME) -> bool:
        """Delete a cached set; returns True when a file was removed."""
        fp = Path(cache_dir) / filename
        if not fp.exists():
            return False
        fp.unlink()
        return True
