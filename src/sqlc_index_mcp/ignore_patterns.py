"""
Ignore Patterns Module

Decides which directories manifest discovery skips. Patterns come from a
built-in list, the server configuration and, optionally, the project's
.gitignore and .ignore files.
"""
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Pattern

logger = logging.getLogger(__name__)

# Directories that never hold a project's own sqlc manifests
DEFAULT_EXCLUDES = [
    '.git', '.svn', '.hg', '.bzr',
    'node_modules', 'vendor',
    'venv', '.venv', 'env', '__pycache__',
    '.idea', '.vscode',
]

# Dot directories that may still contain manifests (CI fixtures, for example)
VISIBLE_DOT_DIRECTORIES = {'.github'}

IGNORE_FILES = ('.gitignore', '.ignore')


@dataclass(frozen=True)
class IgnoreRule:
    """One compiled gitignore-style line."""
    source: str
    regex: Pattern
    negated: bool


def compile_rule(line: str) -> Optional[IgnoreRule]:
    """Compile a gitignore-style line, or return None for blanks and comments.

    Supports ``!`` negation, a leading ``/`` anchor, a trailing ``/`` for
    directory-only rules, and ``*``, ``**`` and ``?`` wildcards.
    """
    line = line.strip()
    if not line or line.startswith('#'):
        return None

    negated = line.startswith('!')
    body = line[1:] if negated else line
    directory_only = body.endswith('/')
    body = body.rstrip('/')
    anchored = body.startswith('/')
    body = body.lstrip('/')
    if not body:
        return None

    translated = (re.escape(body)
                  .replace(r'\*\*', '.*')
                  .replace(r'\*', '[^/]*')
                  .replace(r'\?', '[^/]'))
    prefix = '^' if anchored else '(^|/)'
    suffix = '(/|$)' if directory_only else '(/.*)?$'
    try:
        return IgnoreRule(line, re.compile(prefix + translated + suffix), negated)
    except re.error as e:
        logger.warning(f"Invalid ignore pattern '{line}': {e}")
        return None


class IgnorePatternMatcher:
    """Matches workspace-relative directories against ignore rules."""

    def __init__(self, base_path: str, extra_patterns: Optional[Iterable[str]] = None,
                 respect_gitignore: bool = True):
        """Initialize the ignore pattern matcher.

        Args:
            base_path: The workspace root that paths are relative to
            extra_patterns: Additional gitignore-style patterns from configuration
            respect_gitignore: Whether to load .gitignore and .ignore from the root
        """
        self.base_path = Path(base_path).resolve()
        lines = DEFAULT_EXCLUDES + list(extra_patterns or [])
        if respect_gitignore:
            for name in IGNORE_FILES:
                lines.extend(self._read_ignore_file(name))

        self.rules: List[IgnoreRule] = []
        for line in lines:
            rule = compile_rule(line)
            if rule is not None:
                self.rules.append(rule)

    def _read_ignore_file(self, name: str) -> List[str]:
        path = self.base_path / name
        if not path.is_file():
            return []
        try:
            return path.read_text(encoding='utf-8', errors='ignore').splitlines()
        except OSError as e:
            logger.warning(f"Could not read {path}: {e}")
            return []

    def should_ignore(self, path: str) -> bool:
        """Check if a path should be ignored.

        Args:
            path: The path to check, relative to base_path

        Returns:
            True if the last matching rule ignores the path
        """
        path = path.replace('\\', '/')
        if path.startswith('./'):
            path = path[2:]

        ignored = False
        for rule in self.rules:
            if rule.regex.search(path):
                ignored = not rule.negated
        return ignored

    def should_ignore_directory(self, dir_path: str) -> bool:
        """Check if discovery should skip a whole directory tree."""
        if self.should_ignore(dir_path):
            return True
        dir_name = os.path.basename(dir_path.rstrip('/\\'))
        return (dir_name.startswith('.') and dir_name not in {'.', '..'}
                and dir_name not in VISIBLE_DOT_DIRECTORIES)
