#!/usr/bin/env python3
"""ClipSage MCP Server - clipboard history commands over stdio."""

import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent
from mcp.server.models import InitializationOptions
from mcp.server.lowlevel import NotificationOptions

from clipsage.commands import CommandSurface
from clipsage.config import Settings, load_settings
from clipsage.engine import Engine

logger = logging.getLogger(__name__)

QUERY_SCHEMA = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": "Search text; empty returns the most recent clips",
        }
    },
    "required": ["query"],
}

EMPTY_SCHEMA = {"type": "object", "properties": {}}


class ClipSageMCPServer:
    """MCP server hosting the capture engine and its command surface."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.commands = CommandSurface(engine.query, engine=engine)

        self.app = Server("clipsage")
        self._register_handlers()

    @classmethod
    async def create(cls, settings: Optional[Settings] = None) -> "ClipSageMCPServer":
        engine = await Engine.create(settings or load_settings())
        return cls(engine)

    def _register_handlers(self):
        """Register MCP protocol handlers."""

        @self.app.list_tools()
        async def list_tools() -> List[Tool]:
            return [
                Tool(
                    name="get_recent_clips",
                    description="Most recent clipboard entries, newest first",
                    inputSchema=EMPTY_SCHEMA,
                ),
                Tool(
                    name="search_clips",
                    description="Hybrid keyword and semantic search through clipboard history",
                    inputSchema=QUERY_SCHEMA,
                ),
                Tool(
                    name="semantic_search_clips",
                    description="Semantic-only search through clipboard history",
                    inputSchema=QUERY_SCHEMA,
                ),
                Tool(
                    name="hide_window",
                    description="Ask the host to hide its window",
                    inputSchema=EMPTY_SCHEMA,
                ),
                Tool(
                    name="show_window",
                    description="Ask the host to show its window",
                    inputSchema=EMPTY_SCHEMA,
                ),
                Tool(
                    name="remove_clip",
                    description="Remove a clipboard entry by ID",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "clip_id": {
                                "type": "string",
                                "description": "Unique clip identifier",
                            }
                        },
                        "required": ["clip_id"],
                    },
                ),
                Tool(
                    name="clip_stats",
                    description="Clipboard history and pipeline statistics",
                    inputSchema=EMPTY_SCHEMA,
                ),
            ]

        @self.app.call_tool()
        async def call_tool(name: str, arguments: Dict[str, Any]) -> List[TextContent]:
            try:
                result = await self._dispatch_tool_call(name, arguments or {})
                return [
                    TextContent(
                        type="text",
                        text=json.dumps(result, indent=2, ensure_ascii=False),
                    )
                ]
            except Exception as e:
                logger.exception(f"Tool {name} failed")
                error_result = {"error": str(e), "tool": name}
                return [TextContent(type="text", text=json.dumps(error_result, indent=2))]

    async def _dispatch_tool_call(self, name: str, arguments: Dict[str, Any]) -> Any:
        """Dispatch tool calls to appropriate handlers."""
        handlers = {
            "get_recent_clips": self._handle_recent,
            "search_clips": self._handle_search,
            "semantic_search_clips": self._handle_semantic_search,
            "hide_window": self._handle_hide,
            "show_window": self._handle_show,
            "remove_clip": self._handle_remove,
            "clip_stats": self._handle_stats,
        }

        handler = handlers.get(name)
        if not handler:
            raise ValueError(f"Unknown tool: {name}")

        return await handler(arguments)

    async def _handle_recent(self, args: Dict[str, Any]) -> Dict[str, Any]:
        clips = await self.commands.get_recent_clips()
        return {"clips": clips, "count": len(clips)}

    async def _handle_search(self, args: Dict[str, Any]) -> Dict[str, Any]:
        query = args.get("query", "")
        clips = await self.commands.search_clips(query)
        return {"query": query, "clips": clips, "count": len(clips)}

    async def _handle_semantic_search(self, args: Dict[str, Any]) -> Dict[str, Any]:
        query = args.get("query", "")
        clips = await self.commands.semantic_search_clips(query)
        return {"query": query, "clips": clips, "count": len(clips)}

    async def _handle_hide(self, args: Dict[str, Any]) -> Dict[str, Any]:
        self.commands.hide_window()
        return {"status": "acknowledged"}

    async def _handle_show(self, args: Dict[str, Any]) -> Dict[str, Any]:
        self.commands.show_window()
        return {"status": "acknowledged"}

    async def _handle_remove(self, args: Dict[str, Any]) -> Dict[str, Any]:
        clip_id = args["clip_id"]
        if await self.commands.remove_clip(clip_id):
            return {"id": clip_id, "status": "removed"}
        return {"id": clip_id, "status": "not_found"}

    async def _handle_stats(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return await self.commands.clip_stats()

    async def run(self):
        """Start the engine, then serve MCP over stdio until the client leaves."""
        await self.engine.start()
        try:
            async with stdio_server() as (read_stream, write_stream):
                await self.app.run(
                    read_stream,
                    write_stream,
                    InitializationOptions(
                        server_name="clipsage",
                        server_version="0.1.0",
                        capabilities=self.app.get_capabilities(
                            notification_options=NotificationOptions(),
                            experimental_capabilities={},
                        ),
                    ),
                )
        finally:
            await self.engine.stop()


def configure_logging(level: str):
    # stdout carries the protocol
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def async_main():
    """Main async entry point."""
    settings = load_settings()
    configure_logging(settings.log_level)
    server = await ClipSageMCPServer.create(settings)
    await server.run()


def main():
    """Synchronous entry point for console script."""
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        logger.info("ClipSage MCP Server stopped")


if __name__ == "__main__":
    main()
