"""Configuration system using platformdirs for cross-platform paths."""

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import platformdirs
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

APP_NAME = "lifeos-orchestrator"
APP_AUTHOR = "lifeos"

LOW_CONFIDENCE_POLICIES = ("dispatch", "fallback", "clarify")


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	db_path: Path = field(init=False)
	runs_db_path: Path = field(init=False)
	log_dir: Path = field(init=False)

	# Orchestration
	default_timezone: str = "America/Los_Angeles"
	agent_timeout: float = 30.0
	flow_timeout: Optional[float] = None  # None: sum of the dispatched agents' timeouts
	classification_threshold: float = 0.5
	low_confidence_policy: str = "dispatch"
	fallback_agent: str = "health-agent"
	whiteboard_context_limit: int = 10

	def __post_init__(self) -> None:
		self.db_path = self.data_dir / "lifeos.db"
		self.runs_db_path = self.data_dir / "agent_runs.db"
		self.log_dir = self.data_dir / "logs"
		if self.low_confidence_policy not in LOW_CONFIDENCE_POLICIES:
			raise ValueError(
				f"low_confidence_policy must be one of {LOW_CONFIDENCE_POLICIES}, "
				f"got {self.low_confidence_policy!r}"
			)

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)


_PATH_FIELDS = {"config_dir", "data_dir"}
_FLOAT_FIELDS = {"agent_timeout", "flow_timeout", "classification_threshold"}
_INT_FIELDS = {"whiteboard_context_limit"}


def _coerce(attr: str, val: str):
	if attr in _PATH_FIELDS:
		return Path(os.path.expanduser(val))
	if attr in _FLOAT_FIELDS:
		return float(val)
	if attr in _INT_FIELDS:
		return int(val)
	return val


def _apply_env_overrides(config: Config) -> Config:
	"""Apply LIFEOS_ORCHESTRATOR_* environment variable overrides."""
	env_map = {
		"LIFEOS_ORCHESTRATOR_CONFIG_DIR": "config_dir",
		"LIFEOS_ORCHESTRATOR_DATA_DIR": "data_dir",
		"LIFEOS_ORCHESTRATOR_TIMEZONE": "default_timezone",
		"LIFEOS_ORCHESTRATOR_AGENT_TIMEOUT": "agent_timeout",
		"LIFEOS_ORCHESTRATOR_FLOW_TIMEOUT": "flow_timeout",
		"LIFEOS_ORCHESTRATOR_CLASSIFICATION_THRESHOLD": "classification_threshold",
		"LIFEOS_ORCHESTRATOR_LOW_CONFIDENCE_POLICY": "low_confidence_policy",
		"LIFEOS_ORCHESTRATOR_FALLBACK_AGENT": "fallback_agent",
		"LIFEOS_ORCHESTRATOR_WHITEBOARD_LIMIT": "whiteboard_context_limit",
	}
	for env_key, attr in env_map.items():
		val = os.getenv(env_key)
		if val:
			setattr(config, attr, _coerce(attr, val))
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


_SETTINGS = {f.name for f in fields(Config) if f.init}


def _apply_toml(config: Config) -> Config:
	"""
	Apply overrides from `<config_dir>/config.toml`.

	Keys may sit at the top level or under an `[orchestrator]` table, which
	wins on conflicts. Unknown keys are logged and ignored.
	"""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	values = {k: v for k, v in data.items() if not isinstance(v, dict)}
	values.update(data.get("orchestrator", {}))
	for key, val in values.items():
		if key not in _SETTINGS:
			logger.warning(f"Ignoring unknown setting {key!r} in {toml_path}")
			continue
		setattr(config, key, _coerce(key, val) if isinstance(val, str) else val)

	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars (.env included) > config.toml > defaults."""
	load_dotenv()
	# Env first so LIFEOS_ORCHESTRATOR_CONFIG_DIR decides which config.toml is read
	config = _apply_env_overrides(Config())
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
