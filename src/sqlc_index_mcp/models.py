"""
Data models for the query index.

Positions are zero-based, the same convention editors use for line and
character offsets.
"""
from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class LineRange:
    """A span of text in a source file."""
    start_line: int
    start_character: int
    end_line: int
    end_character: int

    @classmethod
    def whole_line(cls, line: int, length: int) -> "LineRange":
        return cls(line, 0, line, length)

    def to_dict(self) -> Dict[str, int]:
        return {
            "start_line": self.start_line,
            "start_character": self.start_character,
            "end_line": self.end_line,
            "end_character": self.end_character,
        }


@dataclass(frozen=True)
class QueryMatch:
    """Name and command extracted from a single definition line."""
    name: str
    command: str


@dataclass(frozen=True)
class QueryCandidate:
    """A query definition found by the scanner, before it is attributed to a file."""
    name: str
    command: str
    line_range: LineRange


@dataclass(frozen=True)
class QueryHit:
    """One occurrence of a query definition in the index.

    ``from_file`` is the key the hit is invalidated by; ``file_path`` is the
    location a caller navigates to. They are the same path for hits produced
    by scanning a file.
    """
    name: str
    file_path: str
    line_range: LineRange
    command: str
    from_file: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "file_path": self.file_path,
            "line_range": self.line_range.to_dict(),
            "command": self.command,
        }
