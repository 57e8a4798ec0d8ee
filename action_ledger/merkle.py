"""Merkle roots and inclusion proofs over ``hash_self`` values.

Leaves are the events' ``hash_self`` hex strings in sequence order. A parent is
``sha256(left_hex + right_hex)``. On a level with an odd number of nodes the
last node is carried up unpaired (never duplicated). An empty tree has root
``GENESIS_HASH``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

from .crypto import GENESIS_HASH, _sha256_hex


def _parent(left: str, right: str) -> str:
    return _sha256_hex((left + right).encode("utf-8"))


def _next_level(level: Sequence[str]) -> List[str]:
    parents = []
    for i in range(0, len(level) - 1, 2):
        parents.append(_parent(level[i], level[i + 1]))
    if len(level) % 2 == 1:
        parents.append(level[-1])
    return parents


def merkle_root(leaves: Sequence[str]) -> str:
    """Compute the Merkle root of hash list."""
    level = list(leaves)
    if not level:
        return GENESIS_HASH
    while len(level) > 1:
        level = _next_level(level)
    return level[0]


@dataclass(frozen=True)
class InclusionProof:
    """Audit path for one leaf. ``path`` holds ``(sibling, side)`` from leaf to root."""

    leaf: str
    index: int
    leaf_count: int
    path: Tuple[Tuple[str, str], ...]

    def root(self) -> str:
        node = self.leaf
        for sibling, side in self.path:
            node = _parent(sibling, node) if side == "L" else _parent(node, sibling)
        return node

    def verify(self, expected_root: str) -> bool:
        return self.root() == expected_root

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leaf": self.leaf,
            "index": self.index,
            "leaf_count": self.leaf_count,
            "path": [[s, side] for s, side in self.path],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "InclusionProof":
        return cls(
            leaf=str(d["leaf"]),
            index=int(d["index"]),
            leaf_count=int(d["leaf_count"]),
            path=tuple((str(s), str(side)) for s, side in d.get("path", [])),
        )


def inclusion_proof(leaves: Sequence[str], index: int) -> InclusionProof:
    if not 0 <= index < len(leaves):
        raise IndexError(f"leaf index {index} out of range for {len(leaves)} leaves")
    path: List[Tuple[str, str]] = []
    level = list(leaves)
    pos = index
    while len(level) > 1:
        if pos % 2 == 1:
            path.append((level[pos - 1], "L"))
        elif pos + 1 < len(level):
            path.append((level[pos + 1], "R"))
        # else: carried up unpaired, no step recorded
        level = _next_level(level)
        pos //= 2
    return InclusionProof(leaf=leaves[index], index=index, leaf_count=len(leaves), path=tuple(path))
