"""Tests for the CLI module."""

import json
import logging
import sys
from logging.handlers import RotatingFileHandler

import pytest

from feature_orchestrator.cli import main, setup_logging
from feature_orchestrator.config import Config

from .helpers import make_plan

PLAN_TEXT = """Working on it.
[PLAN_STEP id="step-1" complexity="low"]
Create schema
Define the account and session tables with migrations and model classes.
[/PLAN_STEP]
[IMPLEMENTATION_COMPLETE]
"""


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path, monkeypatch):
	monkeypatch.setenv("FEATURE_ORCHESTRATOR_CONFIG_DIR", str(tmp_path / "config"))
	monkeypatch.setenv("FEATURE_ORCHESTRATOR_DATA_DIR", str(tmp_path / "data"))
	yield
	root = logging.getLogger()
	for handler in list(root.handlers):
		if isinstance(handler, RotatingFileHandler):
			root.removeHandler(handler)
			handler.close()


def run_cli(monkeypatch, *argv: str) -> None:
	monkeypatch.setattr(sys, "argv", ["feature-orchestrator", *argv])
	main()


def test_no_command_exits(monkeypatch, capsys):
	with pytest.raises(SystemExit) as exc:
		run_cli(monkeypatch)
	assert exc.value.code == 1
	assert "feature-orchestrator" in capsys.readouterr().out


def test_parse_json(tmp_path, monkeypatch, capsys):
	output_file = tmp_path / "output.txt"
	output_file.write_text(PLAN_TEXT)

	run_cli(monkeypatch, "parse", str(output_file), "--json")

	parsed = json.loads(capsys.readouterr().out)
	assert parsed["plan_steps"][0]["id"] == "step-1"
	assert parsed["implementation_complete"] is True


def test_parse_missing_file(tmp_path, monkeypatch):
	with pytest.raises(SystemExit) as exc:
		run_cli(monkeypatch, "parse", str(tmp_path / "missing.txt"))
	assert exc.value.code == 1


def test_validate_valid_plan(tmp_path, monkeypatch):
	plan_file = tmp_path / "plan.json"
	plan_file.write_text(make_plan().model_dump_json())
	run_cli(monkeypatch, "validate", str(plan_file), "--tree")


def test_validate_invalid_plan_exits(tmp_path, monkeypatch):
	document = make_plan().model_dump(mode="json")
	document["test_coverage"]["framework"] = ""
	plan_file = tmp_path / "plan.json"
	plan_file.write_text(json.dumps(document))

	with pytest.raises(SystemExit) as exc:
		run_cli(monkeypatch, "validate", str(plan_file), "--context")
	assert exc.value.code == 1


def test_validate_rejects_non_object(tmp_path, monkeypatch):
	plan_file = tmp_path / "plan.json"
	plan_file.write_text("[]")
	with pytest.raises(SystemExit):
		run_cli(monkeypatch, "validate", str(plan_file))


def test_sessions_empty_project(monkeypatch, capsys):
	run_cli(monkeypatch, "sessions", "/work/app")
	assert "Project" in capsys.readouterr().out


def test_setup_logging_writes_file(tmp_path):
	config = Config(config_dir=tmp_path / "config", data_dir=tmp_path / "data")
	setup_logging(verbose=True, config=config)

	logging.getLogger("feature_orchestrator.test").debug("hello log")
	for handler in logging.getLogger().handlers:
		handler.flush()

	log_file = config.log_dir / "feature-orchestrator.log"
	assert "hello log" in log_file.read_text()
	assert logging.getLogger().level == logging.DEBUG
