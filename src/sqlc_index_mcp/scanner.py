"""
Query Scanner Module

Finds sqlc query definitions in SQL source text. A definition is a comment
line of the form::

    -- name: GetUser :one

Only the definition line itself is recognised; query bodies are not parsed.
"""
import re
from typing import Iterator, Optional

from .models import LineRange, QueryCandidate, QueryMatch

QUERY_DEFINITION_RE = re.compile(r'^\s*--\s+name:\s*([A-Za-z0-9_]+)\s+(:[A-Za-z0-9]+)\b')
LINE_SPLIT_RE = re.compile(r'\r?\n')


def match_query_definition(line: str) -> Optional[QueryMatch]:
    """Match a single line against the query definition pattern.

    Args:
        line: A line of SQL source without its line terminator

    Returns:
        The extracted name and command, or None if the line is not a definition
    """
    match = QUERY_DEFINITION_RE.match(line)
    if match:
        return QueryMatch(name=match.group(1), command=match.group(2))
    return None


def scan(text: str) -> Iterator[QueryCandidate]:
    """Yield every query definition in ``text`` in line order.

    Both LF and CRLF line endings are accepted. Each candidate's range covers
    the whole definition line.
    """
    for line_number, line in enumerate(LINE_SPLIT_RE.split(text)):
        match = match_query_definition(line)
        if not match:
            continue
        yield QueryCandidate(
            name=match.name,
            command=match.command,
            line_range=LineRange.whole_line(line_number, len(line)),
        )
