"""ghgraph: cross-referenced snapshots of GitHub issues, pull requests and commits."""

__version__ = "0.1.0"

from ghgraph.ancestry import AncestryOracle, GitAncestryOracle
from ghgraph.cache import RECURSION, EntityCache, RepositoryCache
from ghgraph.credentials import Credential, CredentialPool
from ghgraph.exceptions import (
    FrozenIssueError,
    GitError,
    GraphError,
    IssueIndexError,
    NoCredentialError,
    SnapshotError,
)
from ghgraph.fetcher import GitHubFetcher
from ghgraph.merge import IMPOSSIBLE_COMMIT, MergeResolver
from ghgraph.models import Commit, Issue, PullRequest, ReferencedLink, State, User
from ghgraph.repository import GitHubRepository
from ghgraph.resolver import GraphResolver

__all__ = [
    "IMPOSSIBLE_COMMIT",
    "RECURSION",
    "AncestryOracle",
    "Commit",
    "Credential",
    "CredentialPool",
    "EntityCache",
    "FrozenIssueError",
    "GitAncestryOracle",
    "GitError",
    "GitHubFetcher",
    "GitHubRepository",
    "GraphError",
    "GraphResolver",
    "Issue",
    "IssueIndexError",
    "MergeResolver",
    "NoCredentialError",
    "PullRequest",
    "ReferencedLink",
    "RepositoryCache",
    "SnapshotError",
    "State",
    "User",
]
