"""
SQLC Index MCP

Keeps a live index of sqlc query definitions ("-- name: GetUser :one") found
in the SQL files that sqlc manifests point at, and resolves query names to
the places they are declared.
"""

from .index_store import SqlcIndex
from .manifest import ManifestError, ManifestPatterns, SqlcIndexError, parse_manifest
from .models import LineRange, QueryCandidate, QueryHit, QueryMatch
from .scanner import match_query_definition, scan
from .globbing import resolve_relative_glob
from .watcher import WatchCoordinator, WatchEvent, WatchEventKind

__all__ = [
    'SqlcIndex', 'ManifestError', 'ManifestPatterns', 'SqlcIndexError', 'parse_manifest',
    'LineRange', 'QueryCandidate', 'QueryHit', 'QueryMatch',
    'match_query_definition', 'scan', 'resolve_relative_glob',
    'WatchCoordinator', 'WatchEvent', 'WatchEventKind',
]
