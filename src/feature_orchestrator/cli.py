"""CLI for feature-orchestrator: serve, parse, validate and sessions commands."""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from logging.handlers import RotatingFileHandler
from pathlib import Path

from pydantic import ValidationError
from rich.console import Console

from .config import Config, load_config
from .markers.parser import get_output_parser
from .plans.migration import ensure_composable_plan, is_legacy_plan
from .plans.validator import get_plan_validator
from .sessions.manager import SessionManager
from .storage import FileStorage
from .views import render_parsed_output, render_plan_tree, render_session_list, render_validation

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool, config: Config) -> None:
	"""Log to stderr (stdout carries the MCP stdio transport) and a rotating file."""
	level = logging.DEBUG if verbose else logging.INFO
	handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
	try:
		config.log_dir.mkdir(parents=True, exist_ok=True)
		file_handler = RotatingFileHandler(
			config.log_dir / "feature-orchestrator.log",
			maxBytes=10 * 1024 * 1024,
			backupCount=5,
		)
		file_handler.setLevel(logging.DEBUG)
		handlers.append(file_handler)
	except OSError as e:
		print(f"Log file unavailable: {e}", file=sys.stderr)

	logging.basicConfig(
		level=level,
		format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
		handlers=handlers,
		force=True,
	)


def _read_file(path: str, console: Console) -> str | None:
	file_path = Path(path).expanduser()
	if not file_path.exists():
		console.print(f"[red]File not found:[/red] {file_path}")
		return None
	return file_path.read_text(encoding="utf-8", errors="replace")


def cmd_serve(args: argparse.Namespace) -> None:
	"""Run the MCP server (stdio transport)."""
	from .server import mcp
	mcp.run()


def cmd_parse(args: argparse.Namespace) -> None:
	"""Extract markers from a file of assistant output."""
	console = Console()
	text = _read_file(args.file, console)
	if text is None:
		sys.exit(1)

	parsed = get_output_parser().parse(text)
	if args.json:
		print(json.dumps(asdict(parsed), indent=2, default=str))
		return
	render_parsed_output(parsed, console)


def cmd_validate(args: argparse.Namespace) -> None:
	"""Validate a plan JSON file. Exits 1 when the plan is invalid."""
	console = Console()
	text = _read_file(args.file, console)
	if text is None:
		sys.exit(1)

	try:
		document = json.loads(text)
	except json.JSONDecodeError as e:
		console.print(f"[red]Invalid JSON:[/red] {e}")
		sys.exit(1)

	if not isinstance(document, dict):
		console.print("[red]Plan must be a JSON object[/red]")
		sys.exit(1)

	if is_legacy_plan(document):
		console.print("[yellow]Legacy plan detected; validating the migrated form.[/yellow]")
		document = ensure_composable_plan(document).model_dump(mode="json")

	validator = get_plan_validator()
	result = validator.validate_plan(document)
	render_validation(result, console)

	if args.tree and result.steps.valid:
		try:
			render_plan_tree(ensure_composable_plan(document), console)
		except ValidationError as e:
			console.print(f"[dim]Plan tree unavailable: {e.error_count()} schema errors[/dim]")

	if not result.overall:
		if args.context:
			console.print(validator.generate_validation_context(document), markup=False)
		sys.exit(1)


def cmd_sessions(args: argparse.Namespace) -> None:
	"""List the sessions of a project."""
	config = load_config()
	manager = SessionManager(FileStorage(config.sessions_dir), config=config)
	project_id = manager.get_project_id(args.project_path)
	sessions = asyncio.run(manager.list_sessions(project_id))
	console = Console()
	console.print(f"[dim]Project {project_id}[/dim]")
	render_session_list(sessions, console)


def main() -> None:
	"""CLI entry point."""
	parser = argparse.ArgumentParser(
		prog="feature-orchestrator",
		description="Staged, assistant-driven feature development sessions",
	)
	parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
	subparsers = parser.add_subparsers(dest="command")

	# serve
	serve_parser = subparsers.add_parser("serve", help="Run MCP server (stdio)")
	serve_parser.set_defaults(func=cmd_serve)

	# parse
	parse_parser = subparsers.add_parser("parse", help="Extract markers from assistant output")
	parse_parser.add_argument("file", help="File containing assistant output")
	parse_parser.add_argument("--json", action="store_true", help="Print JSON instead of tables")
	parse_parser.set_defaults(func=cmd_parse)

	# validate
	validate_parser = subparsers.add_parser("validate", help="Validate a plan JSON file")
	validate_parser.add_argument("file", help="Plan JSON file (composable or legacy)")
	validate_parser.add_argument("--tree", action="store_true", help="Also render the step tree")
	validate_parser.add_argument("--context", action="store_true", help="Print rework guidance when invalid")
	validate_parser.set_defaults(func=cmd_validate)

	# sessions
	sessions_parser = subparsers.add_parser("sessions", help="List a project's sessions and queue")
	sessions_parser.add_argument("project_path", help="Path to the project repository")
	sessions_parser.set_defaults(func=cmd_sessions)

	args = parser.parse_args()

	if not args.command:
		parser.print_help()
		sys.exit(1)

	setup_logging(args.verbose, load_config())
	args.func(args)
