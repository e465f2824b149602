"""In-memory node graph keyed by node id.

The node mapping owns every node. Parent links are a separate index
(child id -> parent id), kept consistent with the children lists on every
mutation. Each mutating method performs all of its checks before touching
any state, so a raised error always leaves the store unchanged.
"""

from typing import Any

from pydantic import ValidationError

from treesync.errors import (
    DuplicateIdError,
    InvariantError,
    NotFoundError,
    PreconditionError,
)
from treesync.models import UPDATABLE_NODE_FIELDS, Node, TreeSnapshot


class TreeStore:
    """Pure CRUD over the nodes of a single tree."""

    def __init__(self, tree_id: str, root: Node, title: str | None = None) -> None:
        if root.children:
            raise InvariantError("A new tree's root must not have children")
        self.tree_id = tree_id
        self.title = title
        self.root_id = root.node_id
        self._nodes: dict[str, Node] = {root.node_id: root.model_copy(deep=True)}
        self._parents: dict[str, str] = {}
        self.focus: str | None = None
        self.zoom: float = 1.0

    @classmethod
    def new(cls, tree_id: str, root_id: str = "root", root_name: str = "") -> "TreeStore":
        return cls(tree_id, Node(node_id=root_id, name=root_name, node_type="root"))

    # -- Queries ------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def query_node(self, node_id: str) -> Node | None:
        """Return a copy of the node, or None if it does not exist."""
        node = self._nodes.get(node_id)
        return node.model_copy(deep=True) if node is not None else None

    def get_node(self, node_id: str) -> Node:
        node = self.query_node(node_id)
        if node is None:
            raise NotFoundError(node_id)
        return node

    def parent_of(self, node_id: str) -> str | None:
        if node_id not in self._nodes:
            raise NotFoundError(node_id)
        return self._parents.get(node_id)

    def children_of(self, node_id: str) -> list[str]:
        return list(self._require(node_id).children)

    def position_of(self, node_id: str) -> int | None:
        parent_id = self.parent_of(node_id)
        if parent_id is None:
            return None
        return self._nodes[parent_id].children.index(node_id)

    def descendants(self, node_id: str) -> list[str]:
        """All ids below node_id, pre-order, excluding node_id itself."""
        return self._walk(node_id)[1:]

    def subtree(self, node_id: str) -> list[Node]:
        """Copies of node_id and its descendants, pre-order."""
        return [self._nodes[i].model_copy(deep=True) for i in self._walk(node_id)]

    def node_ids(self) -> list[str]:
        return self._walk(self.root_id)

    # -- Mutations ----------------------------------------------------------

    def add_node(self, parent_id: str, node: Node, position: int | None = None) -> None:
        """Attach a new leaf under parent_id (appended when position is None)."""
        parent = self._require(parent_id)
        if node.node_id in self._nodes:
            raise DuplicateIdError(node.node_id)
        if node.children:
            raise InvariantError(
                f"New node {node.node_id} must not carry children; use insert_subtree"
            )
        index = self._check_position(parent, position)

        self._nodes[node.node_id] = node.model_copy(deep=True)
        self._parents[node.node_id] = parent_id
        parent.children.insert(index, node.node_id)

    def insert_subtree(
        self,
        parent_id: str,
        root: Node,
        descendants: list[Node],
        position: int | None = None,
    ) -> None:
        """Attach a previously detached subtree, preserving its structure."""
        parent = self._require(parent_id)
        index = self._check_position(parent, position)

        incoming = {root.node_id: root}
        for node in descendants:
            if node.node_id in incoming:
                raise DuplicateIdError(node.node_id)
            incoming[node.node_id] = node
        for node_id in incoming:
            if node_id in self._nodes:
                raise DuplicateIdError(node_id)

        parents: dict[str, str] = {}
        for node in incoming.values():
            for child_id in node.children:
                if child_id not in incoming or child_id == root.node_id:
                    raise InvariantError(
                        f"Subtree child {child_id} of {node.node_id} is not part of the subtree"
                    )
                if child_id in parents:
                    raise InvariantError(f"Node {child_id} has more than one parent")
                parents[child_id] = node.node_id
        reachable = [root.node_id]
        for node_id in reachable:
            reachable.extend(incoming[node_id].children)
        if len(reachable) != len(incoming):
            raise InvariantError("Subtree contains nodes unreachable from its root")

        for node in incoming.values():
            self._nodes[node.node_id] = node.model_copy(deep=True)
        self._parents.update(parents)
        self._parents[root.node_id] = parent_id
        parent.children.insert(index, root.node_id)

    def remove_node(self, node_id: str) -> list[Node]:
        """Remove node_id and its whole subtree. Returns the removed nodes, pre-order."""
        if node_id == self.root_id:
            raise InvariantError("The root node cannot be removed")
        self._require(node_id)

        removed = self.subtree(node_id)
        parent_id = self._parents.pop(node_id)
        self._nodes[parent_id].children.remove(node_id)
        for node in removed:
            del self._nodes[node.node_id]
            self._parents.pop(node.node_id, None)
        if self.focus is not None and self.focus not in self._nodes:
            self.focus = None
        return removed

    def update_node(self, node_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Merge the supplied fields into the node. Returns the prior values."""
        node = self._require(node_id)
        unknown = set(changes) - UPDATABLE_NODE_FIELDS
        if unknown:
            raise PreconditionError(f"Unknown node fields: {sorted(unknown)}")
        if "metadata" in changes and not isinstance(changes["metadata"], dict):
            raise PreconditionError("metadata must be a mapping")
        for field in ("name", "node_type"):
            if field in changes and not isinstance(changes[field], str):
                raise PreconditionError(f"{field} must be a string")

        prior = {field: getattr(node, field) for field in changes}
        for field, value in changes.items():
            setattr(node, field, dict(value) if field == "metadata" else value)
        return prior

    def set_focus(self, node_id: str | None) -> str | None:
        if node_id is not None:
            self._require(node_id)
        prior, self.focus = self.focus, node_id
        return prior

    def set_zoom(self, level: float) -> float:
        if level <= 0:
            raise PreconditionError(f"Zoom level must be positive, got {level}")
        prior, self.zoom = self.zoom, level
        return prior

    # -- Snapshots & serialization -------------------------------------------

    def snapshot(self) -> TreeSnapshot:
        return TreeSnapshot(
            tree_id=self.tree_id,
            title=self.title,
            root_id=self.root_id,
            nodes={i: n.model_copy(deep=True) for i, n in self._nodes.items()},
            focus=self.focus,
            zoom=self.zoom,
        )

    @classmethod
    def from_snapshot(cls, snapshot: TreeSnapshot) -> "TreeStore":
        """Rebuild a store, validating that the nodes form one tree."""
        root = snapshot.nodes.get(snapshot.root_id)
        if root is None:
            raise InvariantError(f"Root {snapshot.root_id} missing from snapshot")

        parents: dict[str, str] = {}
        for node_id, node in snapshot.nodes.items():
            if node.node_id != node_id:
                raise InvariantError(f"Node keyed {node_id} has id {node.node_id}")
            for child_id in node.children:
                if child_id not in snapshot.nodes:
                    raise InvariantError(f"Child {child_id} of {node_id} does not exist")
                if child_id in parents or child_id == snapshot.root_id:
                    raise InvariantError(f"Node {child_id} has more than one parent")
                parents[child_id] = node_id

        store = cls.__new__(cls)
        store.tree_id = snapshot.tree_id
        store.title = snapshot.title
        store.root_id = snapshot.root_id
        store._nodes = {i: n.model_copy(deep=True) for i, n in snapshot.nodes.items()}
        store._parents = parents
        store.focus = snapshot.focus
        store.zoom = snapshot.zoom

        # Every child has one parent; a cycle would leave some node unreachable.
        if len(store._walk(store.root_id)) != len(store._nodes):
            raise InvariantError("Snapshot contains nodes unreachable from the root")
        if store.focus is not None and store.focus not in store._nodes:
            raise InvariantError(f"Focused node {store.focus} does not exist")
        return store

    def copy(self) -> "TreeStore":
        return TreeStore.from_snapshot(self.snapshot())

    def serialize(self) -> str:
        return self.snapshot().model_dump_json()

    @classmethod
    def deserialize(cls, data: str) -> "TreeStore":
        try:
            snapshot = TreeSnapshot.model_validate_json(data)
        except ValidationError as e:
            raise InvariantError(f"Malformed tree data: {e}") from e
        return cls.from_snapshot(snapshot)

    # -- Internals ----------------------------------------------------------

    def _require(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise NotFoundError(node_id)
        return node

    @staticmethod
    def _check_position(parent: Node, position: int | None) -> int:
        if position is None:
            return len(parent.children)
        if not 0 <= position <= len(parent.children):
            raise PreconditionError(
                f"Position {position} out of range for {parent.node_id} "
                f"({len(parent.children)} children)"
            )
        return position

    def _walk(self, node_id: str) -> list[str]:
        self._require(node_id)
        order: list[str] = []
        stack = [node_id]
        while stack:
            current = stack.pop()
            order.append(current)
            stack.extend(reversed(self._nodes[current].children))
        return order
