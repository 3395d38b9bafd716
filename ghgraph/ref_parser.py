"""Find commit hash and issue number candidates in free text."""

from __future__ import annotations

import re

# Hex runs of 5-40 characters; most matches on ordinary words resolve to nothing.
SHA_PATTERN = re.compile(r"\b([0-9a-f]{5,40})\b")

# "#123" - issue or pull request number
ISSUE_PATTERN = re.compile(r"#([0-9]{1,11})\b")


def extract_hashes(text: str | None) -> list[str]:
    """Return distinct hash candidates in order of first appearance."""
    if not text:
        return []
    return list(dict.fromkeys(SHA_PATTERN.findall(text)))


def extract_issue_numbers(text: str | None) -> list[int]:
    """Return distinct issue number candidates in order of first appearance."""
    if not text:
        return []
    return list(dict.fromkeys(int(n) for n in ISSUE_PATTERN.findall(text)))
