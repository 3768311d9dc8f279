"""
Go-to-definition support.

sqlc generates one Go method per query, named after the query, so the word
under the cursor at a call site like ``queries.CreateUser(ctx, ...)`` is the
query name to look up.
"""
import re
from typing import List, Optional

from .index_store import SqlcIndex
from .models import QueryHit
from .scanner import LINE_SPLIT_RE

WORD_RE = re.compile(r'[A-Za-z0-9_]+')


def identifier_at(line_text: str, character: int) -> Optional[str]:
    """Return the identifier touching ``character`` in ``line_text``, if any.

    A cursor placed just after the last character of a word still selects
    that word.
    """
    for match in WORD_RE.finditer(line_text):
        if match.start() <= character <= match.end():
            return match.group(0)
        if match.start() > character:
            break
    return None


def find_definition(index: SqlcIndex, source_text: str, line: int, character: int) -> Optional[List[QueryHit]]:
    """
    Resolve the identifier at a position in Go source to its query definitions.

    Args:
        index: The query index
        source_text: Full text of the Go file
        line: Zero-based line of the cursor
        character: Zero-based column of the cursor

    Returns:
        The query's hits, or None if there is no identifier or no such query
    """
    lines = LINE_SPLIT_RE.split(source_text)
    if line < 0 or line >= len(lines):
        return None
    name = identifier_at(lines[line], character)
    if name is None:
        return None
    return index.lookup(name)
