"""Custom exceptions for ghgraph."""


class GraphError(Exception):
    """Base exception for all ghgraph errors."""


class NoCredentialError(GraphError):
    """Raised when no API credential is usable and waiting is disabled."""


class FrozenIssueError(GraphError):
    """Raised when a frozen issue is modified."""

    def __init__(self, number: int, attribute: str):
        self.number = number
        self.attribute = attribute
        super().__init__(f"issue #{number} is frozen, cannot set '{attribute}'")


class IssueIndexError(GraphError):
    """Raised when the issue list of a repository cannot be fetched at all."""


class SnapshotError(GraphError):
    """Raised when a snapshot file cannot be read or has an invalid layout."""


class GitError(GraphError):
    """Raised when a git command needed to prepare a clone fails."""
