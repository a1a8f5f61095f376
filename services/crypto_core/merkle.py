# crypto_core/merkle.py
from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional

from services.crypto_core.hashing import sha256_hex

EMPTY_ROOT_SEED = "MERKLE_ROOT_INIT"


def leaf_hash(commitment: str) -> str:
    return sha256_hex(f"leaf:{commitment}")


def node_hash(left: str, right: str) -> str:
    return sha256_hex(f"{left}:{right}")


def empty_root() -> str:
    return sha256_hex(EMPTY_ROOT_SEED)


class MerkleTree:
    """
    Append-only Merkle accumulator over commitment leaves.

    `layers[0]` holds leaf hashes in insertion order, `layers[k+1][i]` is
    H(layers[k][2i] : layers[k][2i+1]) with the last node paired with itself
    when a layer has odd length. Appending rehashes only the new leaf's path.
    """

    def __init__(self, commitments: Optional[Iterable[str]] = None):
        self._lock = threading.Lock()
        self.layers: List[List[str]] = [[]]
        self._index: Dict[str, int] = {}
        for c in commitments or []:
            self.add_leaf(c)

    def __len__(self) -> int:
        return len(self.layers[0])

    @property
    def leaves(self) -> List[str]:
        return list(self.layers[0])

    def root(self) -> str:
        if not self.layers[0]:
            return empty_root()
        return self.layers[-1][0]

    def add_leaf(self, commitment: str) -> str:
        leaf = leaf_hash(commitment)
        with self._lock:
            idx = len(self.layers[0])
            self.layers[0].append(leaf)
            self._index.setdefault(leaf, idx)
            self._rehash_path(idx)
        return leaf

    def _rehash_path(self, idx: int) -> None:
        level = 0
        while len(self.layers[level]) > 1:
            nodes = self.layers[level]
            parent = idx // 2
            left = nodes[2 * parent]
            right = nodes[2 * parent + 1] if 2 * parent + 1 < len(nodes) else left
            if level + 1 == len(self.layers):
                self.layers.append([])
            upper = self.layers[level + 1]
            h = node_hash(left, right)
            if parent < len(upper):
                upper[parent] = h
            else:
                upper.append(h)
            idx = parent
            level += 1

    def index_of(self, commitment: str) -> int:
        return self._index.get(leaf_hash(commitment), -1)

    def get_proof(self, idx: int) -> List[Dict[str, str]]:
        if idx < 0 or idx >= len(self.layers[0]):
            raise IndexError(f"leaf index {idx} out of range")
        path: List[Dict[str, str]] = []
        for nodes in self.layers[:-1]:
            if idx % 2 == 0:
                sibling = nodes[idx + 1] if idx + 1 < len(nodes) else nodes[idx]
                path.append({"sibling": sibling, "position": "right"})
            else:
                path.append({"sibling": nodes[idx - 1], "position": "left"})
            idx //= 2
        return path

    def generate_merkle_proof(self, commitment: str) -> Optional[Dict[str, object]]:
        idx = self.index_of(commitment)
        if idx == -1:
            return None
        return {
            "leafHash": self.layers[0][idx],
            "leafIndex": idx,
            "root": self.root(),
            "path": self.get_proof(idx),
        }


def compute_root(leaf_hashes: List[str]) -> str:
    """Full bottom-up recomputation; reference for the incremental tree."""
    if not leaf_hashes:
        return empty_root()
    level = list(leaf_hashes)
    while len(level) > 1:
        nxt = []
        for i in range(0, len(level), 2):
            left = level[i]
            right = level[i + 1] if i + 1 < len(level) else left
            nxt.append(node_hash(left, right))
        level = nxt
    return level[0]


def verify_merkle(leaf_hex: str, path: List[Dict[str, str]], root_hex: str) -> bool:
    acc = leaf_hex
    for step in path:
        sibling = step.get("sibling")
        if not sibling:
            return False
        if step.get("position") == "left":
            acc = node_hash(sibling, acc)
        else:
            acc = node_hash(acc, sibling)
    return acc == root_hex
