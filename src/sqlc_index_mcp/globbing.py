"""
Glob Resolution Module

Resolves manifest-relative query globs to absolute globs, expands them to
files on disk and discovers manifests under a workspace root.
"""
import asyncio
import glob
import os
import re
from typing import Iterable, List, Optional

from .constants import DIRECTORY_GLOB, DIRECTORY_PATTERN, MANIFEST_FILENAMES
from .ignore_patterns import IgnorePatternMatcher

GLOB_SPECIAL_CHARS = set('*?[{')


def resolve_relative_glob(manifest_path: str, pattern: str) -> str:
    """Anchor a manifest's query glob at the manifest's directory.

    Args:
        manifest_path: Absolute path of the manifest file
        pattern: Glob as written in the manifest

    Returns:
        Absolute glob; "." becomes every file in the manifest's directory
    """
    if pattern == DIRECTORY_PATTERN:
        pattern = DIRECTORY_GLOB
    config_dir = os.path.dirname(manifest_path)
    return os.path.normpath(os.path.join(config_dir, pattern))


def expand_braces(pattern: str) -> List[str]:
    """Expand ``{a,b}`` alternatives, which the glob module does not support."""
    depth = 0
    start = None
    for i, ch in enumerate(pattern):
        if ch == '{':
            if depth == 0:
                start = i
            depth += 1
        elif ch == '}' and depth:
            depth -= 1
            if depth == 0:
                body = pattern[start + 1:i]
                options = _split_alternatives(body)
                if len(options) < 2:
                    continue
                prefix, suffix = pattern[:start], pattern[i + 1:]
                expanded = []
                for option in options:
                    for tail in expand_braces(option + suffix):
                        expanded.append(prefix + tail)
                return expanded
    return [pattern]


def _split_alternatives(body: str) -> List[str]:
    options = []
    depth = 0
    current = ''
    for ch in body:
        if ch == ',' and depth == 0:
            options.append(current)
            current = ''
            continue
        if ch == '{':
            depth += 1
        elif ch == '}':
            depth -= 1
        current += ch
    options.append(current)
    return options


def list_files(absolute_glob: str) -> List[str]:
    """Expand an absolute glob to the files it matches.

    Directories are never returned. ``**`` matches any number of directories.
    """
    files = set()
    for pattern in expand_braces(absolute_glob):
        for path in glob.glob(pattern, recursive=True):
            if os.path.isfile(path):
                files.add(os.path.abspath(path))
    return sorted(files)


async def list_files_async(absolute_glob: str) -> List[str]:
    """List files without blocking the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, list_files, absolute_glob)


def discover_manifests(root: str, filenames: Optional[Iterable[str]] = None,
                       ignore_matcher: Optional[IgnorePatternMatcher] = None) -> List[str]:
    """Find every sqlc manifest under a workspace root.

    Args:
        root: Workspace root directory
        filenames: Manifest file names to look for
        ignore_matcher: Matcher for directories to skip

    Returns:
        Sorted absolute paths of the manifests found
    """
    names = set(filenames or MANIFEST_FILENAMES)
    root = os.path.abspath(root)
    found = []
    for dirpath, dirnames, files in os.walk(root):
        if ignore_matcher is not None:
            rel_dir = os.path.relpath(dirpath, root)
            dirnames[:] = [
                d for d in dirnames
                if not ignore_matcher.should_ignore_directory(
                    d if rel_dir == '.' else os.path.join(rel_dir, d))
            ]
        for name in files:
            if name in names:
                found.append(os.path.join(dirpath, name))
    return sorted(found)


async def discover_manifests_async(root: str, filenames: Optional[Iterable[str]] = None,
                                   ignore_matcher: Optional[IgnorePatternMatcher] = None) -> List[str]:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, discover_manifests, root, filenames, ignore_matcher)


# "**" as a whole segment: any number of directories whose names do not start with "."
RECURSIVE_DIRS_RE = r'(?:[^/.][^/]*/)*'
RECURSIVE_TAIL_RE = r'(?:[^/.][^/]*(?:/[^/.][^/]*)*)?'


def _segment_to_regex(segment: str) -> str:
    regex = ''
    i = 0
    while i < len(segment):
        ch = segment[i]
        if ch == '*':
            regex += '[^/]*'
            while i + 1 < len(segment) and segment[i + 1] == '*':
                i += 1
        elif ch == '?':
            regex += '[^/]'
        elif ch == '[':
            end = segment.find(']', i + 1)
            if end == -1:
                regex += re.escape(ch)
            else:
                body = segment[i + 1:end]
                if body.startswith('!'):
                    body = '^' + body[1:]
                regex += '[' + body.replace('\\', '\\\\') + ']'
                i = end
        else:
            regex += re.escape(ch)
        i += 1
    # Like glob.glob, a leading wildcard never matches a hidden name
    if segment[:1] in ('*', '?', '['):
        regex = r'(?!\.)' + regex
    return regex


def glob_to_regex(absolute_glob: str) -> str:
    """Convert a brace-free glob to a regex matched against whole '/'-separated paths.

    Follows glob.glob(recursive=True): ``*`` and ``?`` never cross a
    separator, a ``**`` segment matches zero or more directories, and
    wildcards do not match names starting with ".".
    """
    segments = absolute_glob.replace('\\', '/').split('/')
    regex = ''
    for position, segment in enumerate(segments):
        last = position == len(segments) - 1
        if segment == '**':
            regex += RECURSIVE_TAIL_RE if last else RECURSIVE_DIRS_RE
            continue
        regex += _segment_to_regex(segment)
        if not last:
            regex += '/'
    return regex


def glob_matches(absolute_glob: str, path: str) -> bool:
    """Check whether an absolute path matches an absolute glob.

    Agrees with list_files: braces are expanded the same way and hidden
    names only match where the glob spells out the leading ".".
    """
    path = path.replace('\\', '/')
    return any(
        re.fullmatch(glob_to_regex(pattern), path) is not None
        for pattern in expand_braces(absolute_glob)
    )


def glob_base_directory(absolute_glob: str) -> str:
    """The deepest directory of a glob that contains no wildcards."""
    parts = absolute_glob.replace('\\', '/').split('/')
    base = []
    for part in parts[:-1]:
        if GLOB_SPECIAL_CHARS.intersection(part):
            break
        base.append(part)
    directory = '/'.join(base)
    if not directory and absolute_glob.startswith(('/', '\\')):
        return os.sep
    return os.path.normpath(directory) if directory else os.curdir
