"""Configuration system using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import platformdirs

APP_NAME = "feature-orchestrator"
APP_AUTHOR = "feature-orchestrator"
ENV_PREFIX = "FEATURE_ORCHESTRATOR_"


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	sessions_dir: Path = field(init=False)
	log_dir: Path = field(init=False)

	# Assistant process
	assistant_command: str = "claude"
	assistant_timeout: float = 600.0

	# Lifecycle tunables
	lock_timeout_minutes: float = 10.0
	max_plan_review_iterations: int = 10
	min_description_length: int = 50
	default_base_branch: str = "main"

	def __post_init__(self) -> None:
		self.sessions_dir = self.data_dir / "sessions"
		self.log_dir = self.data_dir / "logs"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.sessions_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)


PATH_FIELDS = {"config_dir", "data_dir"}
FLOAT_FIELDS = {"assistant_timeout", "lock_timeout_minutes"}
INT_FIELDS = {"max_plan_review_iterations", "min_description_length"}


def _coerce(attr: str, val):
	"""Convert a raw override value to the field's type."""
	if attr in PATH_FIELDS:
		return Path(os.path.expanduser(str(val)))
	if attr in FLOAT_FIELDS:
		return float(val)
	if attr in INT_FIELDS:
		return int(val)
	return val


def _apply_env_overrides(config: Config) -> Config:
	"""Apply FEATURE_ORCHESTRATOR_* environment variable overrides."""
	env_map = {
		f"{ENV_PREFIX}CONFIG_DIR": "config_dir",
		f"{ENV_PREFIX}DATA_DIR": "data_dir",
		f"{ENV_PREFIX}ASSISTANT_COMMAND": "assistant_command",
		f"{ENV_PREFIX}ASSISTANT_TIMEOUT": "assistant_timeout",
		f"{ENV_PREFIX}LOCK_TIMEOUT_MINUTES": "lock_timeout_minutes",
		f"{ENV_PREFIX}MAX_PLAN_REVIEW_ITERATIONS": "max_plan_review_iterations",
		f"{ENV_PREFIX}MIN_DESCRIPTION_LENGTH": "min_description_length",
		f"{ENV_PREFIX}DEFAULT_BASE_BRANCH": "default_base_branch",
	}
	for env_key, attr in env_map.items():
		val = os.getenv(env_key)
		if val:
			setattr(config, attr, _coerce(attr, val))
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Apply config.toml overrides if file exists."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	for key, val in data.items():
		if hasattr(config, key) and key not in {"sessions_dir", "log_dir"}:
			setattr(config, key, _coerce(key, val))

	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars > config.toml > defaults."""
	config = Config()
	# config_dir itself may be relocated by the environment before reading toml
	env_config_dir = os.getenv(f"{ENV_PREFIX}CONFIG_DIR")
	if env_config_dir:
		config.config_dir = _coerce("config_dir", env_config_dir)
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config.ensure_dirs()
	return config


# Singleton
_config: Config | None = None


def get_config() -> Config:
	"""Get or create the global config instance."""
	global _config
	if _config is None:
		_config = load_config()
	return _config
