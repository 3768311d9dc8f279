"""
Example client script for the SQLC Index MCP Server.

This script shows how to programmatically interact with the SQLC Index MCP Server.
"""
import asyncio
import json
import sys
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client


async def main(project_path: str, query_name: str):
    # Create server parameters for stdio connection
    server_params = StdioServerParameters(
        command="python",
        args=["run.py"],
    )

    async with stdio_client(server_params) as (read, write):
        async with ClientSession(read, write) as session:
            # Initialize the connection
            await session.initialize()

            print("Connected to SQLC Index MCP Server\n")

            # List available tools
            print("Available Tools:")
            tools = await session.list_tools()
            for tool in tools.tools:
                print(f"  - {tool.name}: {tool.description}")
            print()

            print(f"Indexing {project_path}...")
            result = await session.call_tool("set_project_path", arguments={"path": project_path})
            print(f"Result: {result.content[0].text}\n")

            print(f"Looking up {query_name}...")
            result = await session.call_tool("find_query", arguments={"name": query_name})
            found = json.loads(result.content[0].text)
            for hit in found.get("hits", []):
                line = hit["line_range"]["start_line"] + 1
                print(f"  - {hit['file_path']}:{line} ({hit['command']})")
            if not found.get("found"):
                print("  not found")


if __name__ == "__main__":
    path = sys.argv[1] if len(sys.argv) > 1 else "."
    name = sys.argv[2] if len(sys.argv) > 2 else "GetUser"
    asyncio.run(main(path, name))
