"""
Exceptions raised while declaring, building or executing a deployment.
"""
from __future__ import annotations

__all__ = [
    "DeployGraphError",
    "DeclarationError",
    "CyclicDependencyError",
    "ReconciliationError",
    "TransactionError",
    "ConcurrentDeploymentError",
    "JournalError",
]


class DeployGraphError(Exception):
    """Base class for every error raised by deploygraph."""

    pass


class DeclarationError(DeployGraphError):
    """Raised when a module declares a malformed graph.

    Id collisions, references to futures that are not part of the build and
    parameters without a value all end up here, before anything is executed.
    """

    pass


class CyclicDependencyError(DeployGraphError):
    """Raised when declared actions or included modules depend on each other in a cycle."""

    def __init__(self, message: str, node_ids=()):
        super().__init__(message)
        self.node_ids = tuple(node_ids)


class ReconciliationError(DeployGraphError):
    """Raised when a previously succeeded node no longer matches its declaration."""

    def __init__(self, message: str, node_ids=()):
        super().__init__(message)
        self.node_ids = tuple(node_ids)


class TransactionError(DeployGraphError):
    """Raised by a chain adapter when a single action fails (revert, network, funds)."""

    pass


class ConcurrentDeploymentError(DeployGraphError):
    """Raised when another attempt already holds the journal of an instance id.

    Nothing happened on chain; retry once the other attempt has finished.
    """

    def __init__(self, instance_id: str, holder: str = ""):
        message = f"Deployment instance '{instance_id}' is already being deployed"
        if holder:
            message += f" ({holder})"
        super().__init__(message)
        self.instance_id = instance_id


class JournalError(DeployGraphError):
    """Raised when the journal would be rewritten or cannot be read."""

    pass
