"""
Logging setup for lifeos-orchestrator.

Every record carries a `flow` attribute naming the flow it was emitted
under ("morning:3f2a..."), or "-" outside of any flow. The orchestrator
binds it with `bind_flow` for the duration of a flow, and agent tasks
inherit it because asyncio copies the context when a task is created.
"""

import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

ROOT_LOGGER = "lifeos_orchestrator"
LOG_FILE_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

_current_flow: ContextVar[str] = ContextVar("lifeos_flow", default="-")


class FlowContextFilter(logging.Filter):
	"""Stamps records with the flow bound in the current context."""

	def filter(self, record: logging.LogRecord) -> bool:
		record.flow = _current_flow.get()
		return True


@contextmanager
def bind_flow(flow_type: str, flow_id: str) -> Iterator[None]:
	"""Tag log records emitted inside the block with a flow."""
	token = _current_flow.set(f"{flow_type}:{flow_id}")
	try:
		yield
	finally:
		_current_flow.reset(token)


def current_flow() -> str:
	return _current_flow.get()


def setup_logging(
	name: str = ROOT_LOGGER,
	level: Optional[str] = None,
	log_dir: Optional[str] = None,
) -> logging.Logger:
	"""
	Attach console and rotating file handlers to the package logger.

	Args:
		name: Logger name
		level: DEBUG, INFO, WARNING or ERROR. Defaults to
			LIFEOS_ORCHESTRATOR_LOG_LEVEL, then INFO.
		log_dir: Directory for `<name>.log`. Defaults to the configured log dir.

	Calling it again for a logger that already has handlers only updates
	the level.
	"""
	level = level or os.getenv("LIFEOS_ORCHESTRATOR_LOG_LEVEL", "INFO")
	log_level = getattr(logging, level.upper(), logging.INFO)

	logger = logging.getLogger(name)
	logger.setLevel(log_level)
	if logger.handlers:
		return logger

	flow_filter = FlowContextFilter()

	console = logging.StreamHandler(sys.stdout)
	console.setLevel(log_level)
	console.addFilter(flow_filter)
	console.setFormatter(logging.Formatter(
		"%(asctime)s [%(levelname)s] [%(flow)s] %(message)s",
		datefmt="%H:%M:%S",
	))
	logger.addHandler(console)

	if log_dir is None:
		from .config import get_config
		log_path = get_config().log_dir
	else:
		log_path = Path(log_dir)
	log_path.mkdir(parents=True, exist_ok=True)

	# File gets everything
	file_handler = RotatingFileHandler(
		log_path / f"{name}.log",
		maxBytes=LOG_FILE_BYTES,
		backupCount=LOG_FILE_BACKUPS,
	)
	file_handler.setLevel(logging.DEBUG)
	file_handler.addFilter(flow_filter)
	file_handler.setFormatter(logging.Formatter(
		"%(asctime)s [%(levelname)s] [%(flow)s] %(name)s:%(lineno)d - %(message)s",
		datefmt="%Y-%m-%d %H:%M:%S",
	))
	logger.addHandler(file_handler)

	return logger


def get_logger(name: str) -> logging.Logger:
	"""Child of the package logger, e.g. get_logger("flow")."""
	return logging.getLogger(f"{ROOT_LOGGER}.{name}")
