# crypto_core/nullifiers.py
from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Tuple


class NullifierSet:
    """
    Set of spent nullifiers. A nullifier is ABSENT or USED; USED is terminal.

    `claim` is the insert-if-absent primitive: the membership test and the
    insert happen under one lock, so two concurrent claims for the same
    nullifier cannot both succeed.
    """

    def __init__(self, entries: Optional[Iterable[Tuple[str, Optional[str]]]] = None):
        self._lock = threading.Lock()
        self._owners: Dict[str, Optional[str]] = {}
        for nullifier, owner in entries or []:
            self._owners[nullifier] = owner

    def __len__(self) -> int:
        return len(self._owners)

    def __contains__(self, nullifier: object) -> bool:
        return nullifier in self._owners

    def is_used(self, nullifier: str) -> bool:
        return nullifier in self._owners

    def mark_used(self, nullifier: str, owner: Optional[str] = None) -> None:
        with self._lock:
            self._owners.setdefault(nullifier, owner)

    def claim(self, nullifier: str, owner: Optional[str] = None) -> bool:
        with self._lock:
            if nullifier in self._owners:
                return False
            self._owners[nullifier] = owner
            return True

    def owner_of(self, nullifier: str) -> Optional[str]:
        return self._owners.get(nullifier)

    def snapshot(self) -> List[Tuple[str, Optional[str]]]:
        with self._lock:
            return list(self._owners.items())
