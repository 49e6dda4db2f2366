"""
Bound Ledger

Tracks the relaxation bound of every node whose region still has open
descendants, so that the global lower bound is the minimum over live
entries. A node's entry is retired once the node itself is resolved
without branching, or once both of its children have been resolved.
"""

from __future__ import annotations

from typing import Dict, Iterable, Optional, Set

from .node import NO_PARENT


class BoundLedger:
    def __init__(self):
        self._bounds: Dict[int, float] = {}
        self._pending: Dict[int, Set[int]] = {}

    def __len__(self) -> int:
        return len(self._bounds)

    def __contains__(self, node_id: int) -> bool:
        return node_id in self._bounds

    def pending_children(self, node_id: int) -> Set[int]:
        return set(self._pending.get(node_id, ()))

    @property
    def num_tracked_parents(self) -> int:
        return len(self._pending)

    def record(self, node_id: int, bound: float) -> None:
        """Record a node's relaxation objective."""
        self._bounds[node_id] = float(bound)

    def register_children(self, parent_id: int, child_ids: Iterable[int]) -> None:
        """Mark `parent_id` as branched; its bound stays live until every child is retired."""
        if parent_id not in self._bounds:
            raise RuntimeError(f"Node {parent_id} branched without a recorded bound")
        if parent_id in self._pending:
            raise RuntimeError(f"Node {parent_id} already has registered children")
        children = set(child_ids)
        if not children:
            raise RuntimeError(f"Node {parent_id} branched into no children")
        self._pending[parent_id] = children

    def retire(self, node_id: int, parent_id: int, branched: bool) -> None:
        """
        Resolve a processed node.

        A node that did not branch drops its own bound. The node is removed
        from its parent's pending set; when that set empties, the parent's
        bound and ancestry entry are deleted.
        """
        if not branched:
            if node_id in self._pending:
                raise RuntimeError(f"Node {node_id} has children but was retired as a leaf")
            self._bounds.pop(node_id, None)

        if parent_id == NO_PARENT:
            return

        pending = self._pending.get(parent_id)
        if pending is None or node_id not in pending:
            raise RuntimeError(
                f"Node {node_id} is not a pending child of node {parent_id}"
            )
        pending.remove(node_id)
        if not pending:
            del self._pending[parent_id]
            del self._bounds[parent_id]

    def lower_bound(self) -> Optional[float]:
        """Minimum live bound, or None when nothing is live."""
        if not self._bounds:
            return None
        return min(self._bounds.values())
