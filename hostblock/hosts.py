"""
hosts.py - Hosts-File Line Parser

Every source kind (downloaded list, content reference, literal location,
exception entry) goes through the same parser so a host is normalized the
same way no matter where it came from.

Accepted format (standard hosts-file convention):

    # full-line comment
    127.0.0.1 ads.example.com      → ads.example.com
    0.0.0.0   TRACKER.example.com  → tracker.example.com
    ::1       local.example.com    → local.example.com
    plain.example.com # trailing   → plain.example.com
    two hosts.example.com          → None (embedded whitespace)

Only a single host per line is supported; lines mapping several names to one
address are rejected rather than guessed at.
"""

from typing import Final, Iterable, Iterator


# =============================================================================
# CONSTANTS
# =============================================================================

#: Address prefixes that are skipped in front of the host field.
#: The prefix must be followed by whitespace (or end the line) to count.
LOOPBACK_PREFIXES: Final[tuple[str, ...]] = ("127.0.0.1", "::1", "0.0.0.0")

COMMENT_CHAR: Final[str] = "#"


# =============================================================================
# PARSING
# =============================================================================

def parse_line(line: str) -> str | None:
    """
    Extract the host from a single hosts-file line.

    Args:
        line: Raw line, with or without trailing newline

    Returns:
        Lower-cased host, or None if the line holds no usable host

    Example:
        >>> parse_line("127.0.0.1 example.com # comment")
        'example.com'
        >>> parse_line("0.0.0.0 EXAMPLE.COM")
        'example.com'
        >>> parse_line("example.com good") is None
        True
        >>> parse_line("   # only a comment") is None
        True
    """
    end = line.find(COMMENT_CHAR)
    if end == -1:
        end = len(line)

    text = line[:end].rstrip()
    if not text:
        return None

    start = 0
    for prefix in LOOPBACK_PREFIXES:
        size = len(prefix)
        if text.startswith(prefix) and (len(text) <= size or text[size].isspace()):
            start = size + 1
            break

    host = text[start:].lstrip()
    if not host:
        return None

    # Reject lines containing a space
    if any(c.isspace() for c in host):
        return None

    return host.lower()


def iter_hosts(lines: Iterable[str]) -> Iterator[str]:
    """Yield every host parsed from lines, skipping the ones without a host."""
    for line in lines:
        host = parse_line(line)
        if host is not None:
            yield host
