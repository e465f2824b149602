"""Error taxonomy shared by the tree, log, history and sync layers."""


class TreeSyncError(Exception):
    """Base class for every treesync error."""


class LocalValidationError(TreeSyncError):
    """An event or operation was rejected; the tree is untouched."""


class NotFoundError(LocalValidationError):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class DuplicateIdError(LocalValidationError):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node already exists: {node_id}")


class InvariantError(LocalValidationError):
    pass


class PreconditionError(LocalValidationError):
    def __init__(self, message: str, event_id: str | None = None) -> None:
        self.event_id = event_id
        super().__init__(message)


class ReconciliationConflictError(TreeSyncError):
    """Concurrent edits cannot be merged. Handled by forking."""

    def __init__(self, conflict: object) -> None:
        self.conflict = conflict
        super().__init__(str(conflict))


class TransportError(TreeSyncError):
    """The backend could not be reached. Pending events stay queued."""
