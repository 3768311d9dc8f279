"""
SQLC Index MCP Server

This MCP server lets LLMs and editors resolve sqlc query names to the SQL
files that declare them. It indexes every sqlc manifest in a project and
keeps the index current while manifests and query files change.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional
import json
import logging
import os
import sys

from mcp.server.fastmcp import FastMCP, Context

from .config_manager import ConfigManager
from .constants import LOG_FORMAT
from .definition import find_definition as resolve_definition
from .globbing import discover_manifests_async
from .ignore_patterns import IgnorePatternMatcher
from .index_store import SqlcIndex
from .models import QueryHit
from .watcher import WatchCoordinator, WatchdogBackend

logger = logging.getLogger(__name__)


@dataclass
class IndexerContext:
    """Context for the SQLC Indexer MCP server."""
    base_path: str = ""
    config: ConfigManager = field(default_factory=ConfigManager)
    index: SqlcIndex = field(default_factory=SqlcIndex)
    coordinator: Optional[WatchCoordinator] = None


def setup_logging(level: str = "INFO"):
    """Send log records to stderr; stdout carries the MCP protocol."""
    package_logger = logging.getLogger("sqlc_index_mcp")
    package_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not package_logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)


def close_project(context: IndexerContext):
    """Release the watches of the current project."""
    if context.coordinator is not None:
        context.coordinator.dispose()
        context.coordinator = None


def build_ignore_matcher(context: IndexerContext) -> IgnorePatternMatcher:
    """Directories manifest discovery and manifest watching both skip."""
    return IgnorePatternMatcher(
        context.base_path,
        extra_patterns=context.config.get_skip_directories(),
        respect_gitignore=context.config.should_respect_gitignore())


async def open_project(context: IndexerContext, base_path: str) -> Dict[str, Any]:
    """
    Point the context at a project and build its index.

    Args:
        context: Server context to update
        base_path: Absolute path of the project root

    Returns:
        Build summary
    """
    close_project(context)
    context.base_path = base_path
    context.config = ConfigManager(project_path=base_path)
    setup_logging(context.config.get_log_level())
    context.index = SqlcIndex()

    if context.config.is_watch_enabled():
        context.coordinator = WatchCoordinator(
            context.index, WatchdogBackend(),
            manifest_globs=context.config.get_manifest_globs())

    return await rebuild_index(context)


async def rebuild_index(context: IndexerContext) -> Dict[str, Any]:
    """Rediscover manifests under the project root and rebuild from scratch."""
    matcher = build_ignore_matcher(context)
    manifests = await discover_manifests_async(
        context.base_path, context.config.get_manifest_filenames(), matcher)

    summary = await context.index.build(manifests)
    if context.coordinator is not None:
        context.coordinator.ignore_matcher = matcher
        if not context.coordinator.manifest_subscriptions:
            context.coordinator.start(context.base_path)
    return summary


def _format_hits(hits: List[QueryHit]) -> List[Dict[str, Any]]:
    return [hit.to_dict() for hit in hits]


@asynccontextmanager
async def indexer_lifespan(server: FastMCP) -> AsyncIterator[IndexerContext]:
    """Manage the lifecycle of the SQLC Indexer MCP server."""
    context = IndexerContext()
    setup_logging(context.config.get_log_level())
    logger.info("Server ready. Waiting for user to set project path...")

    try:
        yield context
    finally:
        close_project(context)
        logger.info("Released all watches.")


# Initialize the server with our lifespan manager
mcp = FastMCP("SqlcIndexer", lifespan=indexer_lifespan)

# ----- RESOURCES -----

@mcp.resource("config://sqlc-indexer")
def get_config() -> str:
    """Get the current configuration of the SQLC Indexer."""
    ctx = mcp.get_context()
    context = ctx.request_context.lifespan_context

    if not context.base_path:
        return json.dumps({
            "status": "not_configured",
            "message": "Project path not set. Please use set_project_path to set a project directory first."
        }, indent=2)

    return json.dumps({
        "base_path": context.base_path,
        "config_path": context.config.config_path,
        "project_config_path": context.config.project_config_path,
        "settings": context.config.get_config(),
        "index": context.index.get_stats(),
    }, indent=2)

# ----- TOOLS -----

@mcp.tool()
async def set_project_path(path: str, ctx: Context) -> Dict[str, Any]:
    """Set the base project path and index every sqlc manifest under it."""
    abs_path = os.path.abspath(os.path.normpath(path))

    if not os.path.exists(abs_path):
        return {"error": f"Path does not exist: {abs_path}", "success": False}
    if not os.path.isdir(abs_path):
        return {"error": f"Path is not a directory: {abs_path}", "success": False}

    context = ctx.request_context.lifespan_context
    try:
        summary = await open_project(context, abs_path)
    except Exception as e:
        logger.exception(f"Error indexing project {abs_path}: {e}")
        return {"error": f"Error indexing project: {e}", "success": False}

    return {
        "success": True,
        "base_path": abs_path,
        "watching": context.coordinator is not None,
        **summary,
    }


@mcp.tool()
def find_query(name: str, ctx: Context) -> Dict[str, Any]:
    """Find every file and line where a sqlc query is declared."""
    context = ctx.request_context.lifespan_context
    if not context.base_path:
        return {"error": "Project path not set. Please use set_project_path first.", "success": False}

    hits = context.index.lookup(name)
    if hits is None:
        if not context.index.is_ready():
            return {"error": "Index is still being built.", "success": False}
        return {"success": True, "name": name, "found": False, "hits": []}
    return {"success": True, "name": name, "found": True, "hits": _format_hits(hits)}


@mcp.tool()
def find_definition(file_path: str, line: int, character: int, ctx: Context) -> Dict[str, Any]:
    """Resolve the sqlc-generated Go method at a position to its SQL query definition(s).

    Line and character are zero-based.
    """
    context = ctx.request_context.lifespan_context
    if not context.base_path:
        return {"error": "Project path not set. Please use set_project_path first.", "success": False}

    if not os.path.isabs(file_path):
        file_path = os.path.join(context.base_path, file_path)
    try:
        with open(file_path, 'r', encoding='utf-8', errors='ignore') as f:
            text = f.read()
    except OSError as e:
        return {"error": f"Could not read {file_path}: {e}", "success": False}

    hits = resolve_definition(context.index, text, line, character)
    return {"success": True, "found": bool(hits), "hits": _format_hits(hits or [])}


@mcp.tool()
async def refresh_index(ctx: Context) -> Dict[str, Any]:
    """Rebuild the query index from scratch."""
    context = ctx.request_context.lifespan_context
    if not context.base_path:
        return {"error": "Project path not set. Please use set_project_path first.", "success": False}

    try:
        summary = await rebuild_index(context)
    except Exception as e:
        logger.exception(f"Error refreshing index: {e}")
        return {"error": f"Error refreshing index: {e}", "success": False}
    return {"success": True, **summary}


@mcp.tool()
def get_index_status(ctx: Context) -> Dict[str, Any]:
    """Report index counts, watched manifests and manifests that failed to parse."""
    context = ctx.request_context.lifespan_context
    stats = context.index.get_stats()
    stats["base_path"] = context.base_path
    stats["manifest_paths"] = context.index.manifests()
    stats["watching"] = context.coordinator is not None
    return stats


def main():
    """Main function to run the MCP server."""
    mcp.run()


if __name__ == '__main__':
    main()
