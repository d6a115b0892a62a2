"""MCP tool registration - modular tool definitions."""

import json
import logging

from mcp.server.fastmcp import FastMCP

from ..config import Config
from ..sessions.manager import get_session_manager
from .plans import register_plans_tools
from .sessions import register_session_tools

logger = logging.getLogger(__name__)


def register_core_tools(mcp: FastMCP, config: Config) -> None:
	"""Register core tools."""

	@mcp.tool()
	async def health_check() -> str:
		"""
		Check the health of the feature-orchestrator server.
		Returns paths and the number of in-flight assistant invocations.
		"""
		manager = get_session_manager(config)
		status = {
			"server": "running",
			"config_dir": str(config.config_dir),
			"sessions_dir": str(config.sessions_dir),
			"sessions_dir_exists": config.sessions_dir.exists(),
			"assistant_command": config.assistant_command,
			"active_spawn_locks": manager.locks.active_lock_count(),
		}
		return json.dumps(status, indent=2)


def register_all_tools(mcp: FastMCP, config: Config) -> None:
	"""Register all MCP tools against one shared session manager."""
	manager = get_session_manager(config)
	register_core_tools(mcp, config)
	register_session_tools(mcp, config, manager)
	register_plans_tools(mcp, config, manager)
	logger.info(f"Registered tools (sessions in {config.sessions_dir})")
