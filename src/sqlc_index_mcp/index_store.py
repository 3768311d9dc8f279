"""
Query Index Module

This module keeps the mapping from sqlc query names to the places they are
declared. The index is made of interlocking mappings:

- manifest path -> files the manifest's query globs resolve to
- file path -> query names the file declares
- query name -> hits (one per declaration)
- manifest path -> absolute globs being watched for it

Every mutation is keyed by a manifest or a file path and replaces that key's
whole contribution, so repeated or interleaved updates of the same key
converge instead of accumulating duplicates.
"""
import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from .globbing import list_files_async, resolve_relative_glob
from .manifest import ManifestError, ManifestPatterns, parse_manifest_async
from .models import QueryCandidate, QueryHit
from .scanner import scan

logger = logging.getLogger(__name__)

ManifestReader = Callable[[str], Awaitable[ManifestPatterns]]
FileLister = Callable[[str], Awaitable[List[str]]]
FileReader = Callable[[str], Awaitable[str]]


def read_text(path: str) -> str:
    """Read a source file, dropping bytes that are not valid UTF-8."""
    with open(path, 'r', encoding='utf-8', errors='ignore') as f:
        return f.read()


async def read_text_async(path: str) -> str:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, read_text, path)


class SqlcIndex:
    """
    Live index of sqlc query definitions.

    The collaborators that touch the filesystem are injectable. Each call to
    one of them is the only place an operation suspends, so tests can delay
    them to exercise interleavings.
    """

    def __init__(self,
                 manifest_reader: Optional[ManifestReader] = None,
                 file_lister: Optional[FileLister] = None,
                 file_reader: Optional[FileReader] = None):
        """
        Initialize an empty index.

        Args:
            manifest_reader: Coroutine returning a manifest's query patterns
            file_lister: Coroutine expanding an absolute glob to file paths
            file_reader: Coroutine returning a file's text
        """
        self.manifest_reader = manifest_reader or parse_manifest_async
        self.file_lister = file_lister or list_files_async
        self.file_reader = file_reader or read_text_async

        self.config_to_files: Dict[str, Set[str]] = {}
        self.file_to_names: Dict[str, Set[str]] = {}
        self.name_to_hits: Dict[str, List[QueryHit]] = {}
        self.config_to_globs: Dict[str, List[str]] = {}
        self.failed_manifests: Dict[str, str] = {}

        # Set by WatchCoordinator; receives watch_config/unwatch_config calls
        self.watcher = None
        self._ready = False
        # Pass counter per manifest; a pass that is no longer the latest stops writing
        self._generations: Dict[str, int] = {}
        # Files claimed by the latest in-progress pass of each manifest
        self._in_flight: Dict[str, Set[str]] = {}

    def is_ready(self) -> bool:
        return self._ready

    def reset(self):
        """Drop every entry and mark the index as not built."""
        self._ready = False
        for config_path in self._generations:
            self._generations[config_path] += 1
        self._in_flight.clear()
        self.config_to_files.clear()
        self.file_to_names.clear()
        self.name_to_hits.clear()
        self.config_to_globs.clear()
        self.failed_manifests.clear()

    async def build(self, manifest_paths: Iterable[str]) -> Dict[str, Any]:
        """
        Build the index from scratch.

        A manifest that fails to parse is logged and skipped; the others are
        indexed regardless.

        Args:
            manifest_paths: Manifests to index

        Returns:
            Summary of the build
        """
        logger.info("[index] Starting index build...")
        if self.watcher is not None:
            for config_path in list(self.config_to_globs):
                self.watcher.unwatch_config(config_path)
        self.reset()

        manifest_paths = list(manifest_paths)
        logger.info(f"[index] Found {len(manifest_paths)} sqlc config(s).")
        for config_path in manifest_paths:
            logger.info(f"[index] Indexing config {config_path}...")
            try:
                await self.index_config(config_path)
            except ManifestError as e:
                logger.error(f"[index] Failed to index config {config_path}: {e.message}")
                continue
            except Exception as e:
                logger.exception(f"[index] Unexpected error indexing config {config_path}: {e}")
                self.failed_manifests[os.path.abspath(config_path)] = str(e)
                continue
            logger.info(f"[index] Finished indexing config {config_path}.")

        self._ready = True
        logger.info("[index] Finished index build.")
        return {
            "manifests": len(self.config_to_files),
            "failed_manifests": len(self.failed_manifests),
            "names": len(self.name_to_hits),
        }

    def lookup(self, name: str) -> Optional[List[QueryHit]]:
        """
        Find every declaration of a query.

        Args:
            name: Query name, e.g. "GetUser"

        Returns:
            The hits in indexing order, or None if the name is unknown or the
            initial build has not finished
        """
        if not self._ready:
            logger.warning("[index] Warning: lookup called before index was ready.")
            return None
        hits = self.name_to_hits.get(name)
        return list(hits) if hits else None

    async def index_config(self, config_path: str) -> int:
        """
        Index every file a manifest's query globs resolve to.

        Files are committed one at a time; a later failure does not roll back
        files already indexed in this pass. Once every file is indexed, the
        manifest's file set is replaced and its watches re-established.

        If the manifest is invalidated or indexed again while this pass is
        suspended, this pass stops at its next step without recording
        anything for the manifest, and drops hits it committed for files
        nothing else claims.

        Args:
            config_path: Path of the manifest

        Returns:
            Number of files the manifest resolves to, or 0 for a superseded pass

        Raises:
            ManifestError: If the manifest cannot be read or is invalid
        """
        config_path = os.path.abspath(config_path)
        generation = self._generations.get(config_path, 0) + 1
        self._generations[config_path] = generation
        seen: Set[str] = set()
        self._in_flight[config_path] = seen
        try:
            return await self._index_config_pass(config_path, generation, seen)
        finally:
            if self._in_flight.get(config_path) is seen:
                del self._in_flight[config_path]

    async def _index_config_pass(self, config_path: str, generation: int, seen: Set[str]) -> int:
        try:
            manifest = await self.manifest_reader(config_path)
        except ManifestError as e:
            if self._is_current(config_path, generation):
                self.failed_manifests[config_path] = e.message
            raise
        if not self._is_current(config_path, generation):
            return self._abandon_pass(config_path, seen)
        self.failed_manifests.pop(config_path, None)

        globs = [resolve_relative_glob(config_path, p) for p in manifest.patterns]
        for pattern, absolute_glob in zip(manifest.patterns, globs):
            logger.info(f'[index] Resolving pattern "{pattern}" from config {config_path}...')
            try:
                files = await self.file_lister(absolute_glob)
            except OSError as e:
                logger.warning(f'[index] Could not list "{absolute_glob}": {e}')
                files = []
            if not self._is_current(config_path, generation):
                return self._abandon_pass(config_path, seen)
            logger.info(f'[index] From config {config_path}, pattern "{pattern}" matched {len(files)} file(s).')

            for file_path in files:
                file_path = os.path.abspath(file_path)
                if file_path in seen:
                    continue
                seen.add(file_path)
                await self.index_file(file_path)
                if not self._is_current(config_path, generation):
                    return self._abandon_pass(config_path, seen)

        previous = self.config_to_files.get(config_path, set())
        self.config_to_files[config_path] = set(seen)
        for stale in previous - seen:
            if not self._is_claimed(stale):
                self.invalidate_file(stale)

        self.config_to_globs[config_path] = globs
        if self.watcher is not None:
            self.watcher.watch_config(config_path, globs)
        return len(seen)

    def _is_current(self, config_path: str, generation: int) -> bool:
        return self._generations.get(config_path) == generation

    def _abandon_pass(self, config_path: str, committed: Set[str]) -> int:
        logger.info(f"[index] Config {config_path} changed while it was being indexed; discarding that pass.")
        for file_path in committed:
            if not self._is_claimed(file_path):
                self.invalidate_file(file_path)
        return 0

    async def index_file(self, file_path: str, config_path: Optional[str] = None) -> int:
        """
        Scan a file and replace its entries in the index.

        A file that cannot be read contributes no hits; any hits it had
        before are still removed.

        Args:
            file_path: Path of the SQL file
            config_path: Manifest to attribute the file to, if any

        Returns:
            Number of query definitions found
        """
        file_path = os.path.abspath(file_path)
        try:
            text = await self.file_reader(file_path)
        except (OSError, UnicodeError) as e:
            logger.warning(f"[index] Could not read {file_path}, treating it as empty: {e}")
            text = ""

        candidates = list(scan(text))
        # No await from here on: lookups never see a half-replaced file.
        self._replace_file_hits(file_path, candidates)
        if config_path is not None:
            self.config_to_files.setdefault(os.path.abspath(config_path), set()).add(file_path)
        return len(candidates)

    def invalidate_file(self, file_path: str, config_path: Optional[str] = None):
        """
        Remove every hit that originates in a file.

        Calling this for a file that was never indexed, or twice in a row, is
        a no-op. The file stays in its manifests' file sets unless
        ``config_path`` names the manifest to detach it from.
        """
        file_path = os.path.abspath(file_path)
        self._remove_file_hits(file_path)
        self.file_to_names.pop(file_path, None)
        if config_path is not None:
            files = self.config_to_files.get(os.path.abspath(config_path))
            if files is not None:
                files.discard(file_path)

    def invalidate_config(self, config_path: str):
        """
        Remove a manifest and every hit from the files it resolved to.

        Files that another manifest still resolves to keep their hits. A pass
        of index_config still running for this manifest is superseded.
        """
        config_path = os.path.abspath(config_path)
        if config_path in self._generations:
            self._generations[config_path] += 1
        self._in_flight.pop(config_path, None)
        files = self.config_to_files.pop(config_path, set())
        for file_path in files:
            if not self._is_claimed(file_path):
                self.invalidate_file(file_path)
        self.config_to_globs.pop(config_path, None)
        self.failed_manifests.pop(config_path, None)
        if self.watcher is not None:
            self.watcher.unwatch_config(config_path)

    def _replace_file_hits(self, file_path: str, candidates: List[QueryCandidate]):
        self._remove_file_hits(file_path)
        names: Set[str] = set()
        for candidate in candidates:
            hit = QueryHit(
                name=candidate.name,
                file_path=file_path,
                line_range=candidate.line_range,
                command=candidate.command,
                from_file=file_path,
            )
            self.name_to_hits.setdefault(candidate.name, []).append(hit)
            names.add(candidate.name)
        self.file_to_names[file_path] = names

    def _remove_file_hits(self, file_path: str):
        for name in self.file_to_names.get(file_path, ()):
            hits = self.name_to_hits.get(name)
            if not hits:
                continue
            remaining = [hit for hit in hits if hit.from_file != file_path]
            if remaining:
                self.name_to_hits[name] = remaining
            else:
                del self.name_to_hits[name]

    def _is_claimed(self, file_path: str) -> bool:
        """Whether a manifest, or a manifest pass in progress, still resolves to the file."""
        return (any(file_path in files for files in self.config_to_files.values())
                or any(file_path in files for files in self._in_flight.values()))

    def manifests(self) -> List[str]:
        return sorted(self.config_to_files)

    def config_files(self, config_path: str) -> Set[str]:
        return set(self.config_to_files.get(os.path.abspath(config_path), ()))

    def file_names(self, file_path: str) -> Set[str]:
        return set(self.file_to_names.get(os.path.abspath(file_path), ()))

    def names(self) -> List[str]:
        return sorted(self.name_to_hits)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the current index.

        Returns:
            Dictionary of index counts and readiness
        """
        return {
            "ready": self._ready,
            "manifests": len(self.config_to_files),
            "files": len(self.file_to_names),
            "names": len(self.name_to_hits),
            "hits": sum(len(hits) for hits in self.name_to_hits.values()),
            "failed_manifests": dict(self.failed_manifests),
        }
