"""Wordlist matching and redaction.

A wordlist is a newline-separated file of regular expressions. Each entry
is matched case-insensitively against the input; every span it matches is
replaced by the redaction marker in a working copy of the input.

Patterns apply in list order, each against the copy already redacted by the
patterns before it. A later pattern can therefore match (part of) an
earlier redaction marker, so running the matcher twice over its own output
is not guaranteed to be a no-op.
"""

import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

_PACKAGED_WORDLISTS = Path(__file__).resolve().parent.parent / "wordlists"
_NAME_RE = re.compile(r"^[a-z0-9_-]+$")


@dataclass
class WordlistMatch:
    matched: bool
    redacted: str
    patterns: list[str] = field(default_factory=list)


@lru_cache(maxsize=64)
def load_wordlist(name: str, directory: str = "") -> tuple[str, ...]:
    """Read a named wordlist. Blank lines are skipped."""
    if not _NAME_RE.match(name):
        raise ValueError(f"Invalid wordlist name: {name!r}")
    base = Path(directory) if directory else _PACKAGED_WORDLISTS
    text = (base / f"{name}.txt").read_text(encoding="utf-8")
    return tuple(line.strip() for line in text.splitlines() if line.strip())


def match_wordlist(
    wordlist: str,
    text: str,
    custom_list: list[str] | None = None,
    redaction: str = "****",
    directory: str = "",
) -> WordlistMatch:
    """Scan text against a named wordlist, or against custom_list when given."""
    lines = custom_list if custom_list is not None else load_wordlist(wordlist, directory)

    matches: list[str] = []
    redacted = text
    for line in lines:
        if not line:
            continue
        pattern = re.compile(line, re.IGNORECASE)
        if pattern.search(text):
            matches.append(line)
            redacted = pattern.sub(lambda _: redaction, redacted)

    return WordlistMatch(matched=bool(matches), redacted=redacted, patterns=matches)
