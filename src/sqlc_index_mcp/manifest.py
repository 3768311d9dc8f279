"""
Manifest Reader Module

Loads sqlc manifests (sqlc.yaml / sqlc.yml) and extracts the glob patterns
that locate their SQL query files.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, List

import yaml


class SqlcIndexError(Exception):
    """Base class for errors raised by the query index."""


class ManifestError(SqlcIndexError):
    """A manifest could not be read, parsed or validated."""

    def __init__(self, path: str, message: str):
        self.path = path
        self.message = message
        super().__init__(f"{path}: {message}")


@dataclass
class ManifestPatterns:
    """Query globs declared by one manifest, in declaration order without duplicates."""
    patterns: List[str] = field(default_factory=list)


# Version 2 manifests list query sets under "sql", version 1 under "packages".
ENTRY_SECTIONS = ("sql", "packages")


def _query_paths(path: str, section: str, index: int, entry: Any) -> List[str]:
    if not isinstance(entry, dict):
        raise ManifestError(path, f"{section}[{index}] must be a mapping")
    if "queries" not in entry:
        raise ManifestError(path, f"{section}[{index}] is missing the 'queries' field")

    queries = entry["queries"]
    if isinstance(queries, str):
        return [queries]
    if isinstance(queries, list) and all(isinstance(q, str) for q in queries):
        return queries
    raise ManifestError(path, f"{section}[{index}].queries must be a string or a list of strings")


def parse_manifest_text(path: str, text: str) -> ManifestPatterns:
    """Parse manifest text into its query patterns.

    Args:
        path: Path of the manifest, used in error messages
        text: Raw YAML content

    Returns:
        ManifestPatterns with every entry's globs unioned

    Raises:
        ManifestError: If the text is not YAML or does not have the expected shape
    """
    try:
        config = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ManifestError(path, f"failed to parse YAML: {e}") from e

    if not config:
        raise ManifestError(path, "failed to parse YAML: document is empty")
    if not isinstance(config, dict):
        raise ManifestError(path, "invalid sqlc config: top level must be a mapping")

    sections = [s for s in ENTRY_SECTIONS if s in config]
    if not sections:
        raise ManifestError(path, "invalid sqlc config: expected a 'sql' or 'packages' list")

    patterns: List[str] = []
    seen = set()
    for section in sections:
        entries = config[section]
        if not isinstance(entries, list):
            raise ManifestError(path, f"invalid sqlc config: '{section}' must be a list")
        for index, entry in enumerate(entries):
            for pattern in _query_paths(path, section, index, entry):
                if pattern not in seen:
                    seen.add(pattern)
                    patterns.append(pattern)

    return ManifestPatterns(patterns=patterns)


def parse_manifest(path: str) -> ManifestPatterns:
    """Read and parse the manifest at ``path``."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            text = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestError(path, f"failed to read manifest: {e}") from e
    return parse_manifest_text(path, text)


async def parse_manifest_async(path: str) -> ManifestPatterns:
    """Parse a manifest without blocking the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, parse_manifest, path)
