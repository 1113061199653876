"""
Dossier Registry: consistency anchors keyed by source hash.

One dossier per source_hash. upsert is atomic and last-write-wins; a lookup
issued after an upsert returns always sees it.
"""

import threading
import time
from typing import Dict, Iterable, List, Optional

from schemas import Dossier, Frame
from utils.logger import get_logger

logger = get_logger("dossier_registry")


class DossierRegistry:
    """
    Recurring-subject registry.

    Persisted together with the project's frames (see StoryStore.to_project).
    """

    def __init__(self, dossiers: Optional[Iterable[Dossier]] = None):
        self._lock = threading.Lock()
        self._by_hash: Dict[str, Dossier] = {}
        for dossier in dossiers or []:
            self._by_hash[dossier.source_hash] = dossier

    def lookup(self, source_hash: Optional[str]) -> Optional[Dossier]:
        """Exact-match lookup. None/empty hash never matches."""
        if not source_hash:
            return None
        with self._lock:
            return self._by_hash.get(source_hash)

    def upsert(self, dossier: Dossier) -> Dossier:
        """Insert or replace by source_hash and stamp last_used."""
        stored = dossier.model_copy(update={"last_used": time.time() * 1000.0})
        with self._lock:
            replaced = stored.source_hash in self._by_hash
            self._by_hash[stored.source_hash] = stored
        logger.info(
            f"[Dossier] {'Replaced' if replaced else 'Registered'} '{stored.role_label}' "
            f"({stored.type.value}) hash={stored.source_hash[:8]}"
        )
        return stored

    def touch(self, source_hash: str) -> Optional[Dossier]:
        """Refresh last_used on reuse."""
        with self._lock:
            current = self._by_hash.get(source_hash)
            if current is None:
                return None
            current = current.model_copy(update={"last_used": time.time() * 1000.0})
            self._by_hash[source_hash] = current
            return current

    def remove(self, source_hash: str) -> bool:
        """Explicit user deletion."""
        with self._lock:
            return self._by_hash.pop(source_hash, None) is not None

    @staticmethod
    def list_by_source_hash(source_hash: str, frames: Iterable[Frame]) -> List[Frame]:
        """All frames that came from the same source image (read-only join)."""
        return [f for f in frames if f.source_hash and f.source_hash == source_hash]

    def all(self) -> List[Dossier]:
        """Most recently used first."""
        with self._lock:
            return sorted(self._by_hash.values(), key=lambda d: d.last_used, reverse=True)

    def to_list(self) -> List[Dossier]:
        with self._lock:
            return list(self._by_hash.values())

    @classmethod
    def from_list(cls, items: Iterable[dict]) -> "DossierRegistry":
        """Rebuild from serialized dossiers (project file, API payload)."""
        return cls(Dossier.model_validate(item) for item in items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_hash)

    def __contains__(self, source_hash: str) -> bool:
        return self.lookup(source_hash) is not None
