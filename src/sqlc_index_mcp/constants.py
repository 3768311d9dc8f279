"""
Shared constants for the SQLC Index MCP server.
"""

# Manifest discovery
MANIFEST_FILENAMES = ["sqlc.yaml", "sqlc.yml"]
MANIFEST_GLOBS = ["**/sqlc.yaml", "**/sqlc.yml"]

# Server configuration file names
CONFIG_FILENAMES = ["sqlc-index.yaml", "sqlc-index.yml"]
PROJECT_CONFIG_FILENAMES = [".sqlc-index.yaml", ".sqlc-index.yml"]

# "." in a manifest's queries field means every file next to the manifest
DIRECTORY_PATTERN = "."
DIRECTORY_GLOB = "*"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
