"""Runtime settings read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_API_URL = "https://api.github.com"


def _env_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(key: str, default: float) -> float:
    return float(os.environ.get(key, default))


def _env_int(key: str, default: int) -> int:
    return int(os.environ.get(key, default))


def read_tokens_file(path: str | Path) -> list[str]:
    """Read API tokens, one per line. Blank lines and ``#`` comments are skipped."""
    tokens = []
    for line in Path(path).read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            tokens.append(line)
    return tokens


@dataclass
class Settings:
    """Settings shared by the CLI and library callers.

    Reads from environment variables:
        GHGRAPH_TOKENS              - comma separated API tokens
        GHGRAPH_TOKENS_FILE         - file with one token per line
        GITHUB_TOKEN                - single token fallback
        GHGRAPH_API_URL             - API base URL (default: https://api.github.com)
        GHGRAPH_TIMEOUT             - HTTP timeout in seconds (default: 30)
        GHGRAPH_PER_PAGE            - page size for list endpoints (default: 100)
        GHGRAPH_WAIT_ON_EXHAUSTION  - block until a token resets (default: true)
        GHGRAPH_GUESS_EMAILS        - guess user emails from push events (default: false)
    """

    tokens: list[str] = field(default_factory=list)
    api_url: str = DEFAULT_API_URL
    timeout: float = 30.0
    per_page: int = 100
    wait_on_exhaustion: bool = True
    guess_emails: bool = False

    @classmethod
    def from_env(cls) -> Settings:
        tokens: list[str] = []
        raw = os.environ.get("GHGRAPH_TOKENS", "")
        tokens.extend(t.strip() for t in raw.split(",") if t.strip())
        tokens_file = os.environ.get("GHGRAPH_TOKENS_FILE")
        if tokens_file:
            tokens.extend(read_tokens_file(tokens_file))
        if not tokens and os.environ.get("GITHUB_TOKEN"):
            tokens.append(os.environ["GITHUB_TOKEN"])

        return cls(
            tokens=tokens,
            api_url=os.environ.get("GHGRAPH_API_URL", DEFAULT_API_URL),
            timeout=_env_float("GHGRAPH_TIMEOUT", 30.0),
            per_page=_env_int("GHGRAPH_PER_PAGE", 100),
            wait_on_exhaustion=_env_bool("GHGRAPH_WAIT_ON_EXHAUSTION", True),
            guess_emails=_env_bool("GHGRAPH_GUESS_EMAILS", False),
        )

    def credential_secrets(self) -> list[str]:
        """Tokens to build the credential pool from; anonymous access if none."""
        # de-duplicate, keep order
        seen: dict[str, None] = dict.fromkeys(self.tokens)
        return list(seen) or [""]
