"""
Agent run history.

Records one row per agent per flow to SQLite for debugging and performance
analysis. The recorder is an ordinary event bus subscriber, so flows never
depend on it.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from .errors import AgentTimeoutError, FlowCancelledError
from .events import (
	AGENT_COMPLETED,
	AGENT_DISPATCHED,
	AGENT_FAILED,
	AgentCompleted,
	AgentDispatched,
	AgentFailed,
	EventBus,
)
from .models import AgentStatus

logger = logging.getLogger(__name__)


@dataclass
class AgentRunRecord:
	"""A single recorded agent invocation."""
	flow_id: str
	flow_type: str
	user_id: str
	agent_id: str
	status: str = AgentStatus.SUCCEEDED.value
	started_at: str = field(default_factory=lambda: datetime.now().isoformat())
	duration_ms: float = 0.0
	error: str = ""


@dataclass
class AgentStats:
	"""Aggregate stats for an agent."""
	agent_id: str
	run_count: int
	avg_duration_ms: float
	success_rate: float
	timeout_count: int
	last_run: str


class AgentRunStore:
	"""SQLite-backed storage for agent run records."""

	def __init__(self, db_path: str = ""):
		if not db_path:
			from .config import get_config
			db_path = str(get_config().runs_db_path)
		self.db_path = Path(db_path)
		self.db_path.parent.mkdir(parents=True, exist_ok=True)
		self._ensure_table()

	def _ensure_table(self) -> None:
		"""Create the agent_runs table if it doesn't exist."""
		with sqlite3.connect(str(self.db_path)) as conn:
			conn.execute("""
				CREATE TABLE IF NOT EXISTS agent_runs (
					id INTEGER PRIMARY KEY AUTOINCREMENT,
					flow_id TEXT NOT NULL,
					flow_type TEXT NOT NULL,
					user_id TEXT NOT NULL,
					agent_id TEXT NOT NULL,
					status TEXT NOT NULL,
					started_at TEXT NOT NULL,
					duration_ms REAL DEFAULT 0.0,
					error TEXT DEFAULT ''
				)
			""")
			conn.execute("""
				CREATE INDEX IF NOT EXISTS idx_agent_runs_agent ON agent_runs(agent_id)
			""")
			conn.execute("""
				CREATE INDEX IF NOT EXISTS idx_agent_runs_flow ON agent_runs(flow_id)
			""")

	def _connect(self) -> sqlite3.Connection:
		conn = sqlite3.connect(str(self.db_path))
		conn.row_factory = sqlite3.Row
		return conn

	def record(self, record: AgentRunRecord) -> None:
		"""Insert an agent run record."""
		with self._connect() as conn:
			conn.execute(
				"""
				INSERT INTO agent_runs
				(flow_id, flow_type, user_id, agent_id, status, started_at, duration_ms, error)
				VALUES (?, ?, ?, ?, ?, ?, ?, ?)
				""",
				(
					record.flow_id,
					record.flow_type,
					record.user_id,
					record.agent_id,
					record.status,
					record.started_at,
					record.duration_ms,
					record.error,
				),
			)

	def query(
		self,
		agent_id: Optional[str] = None,
		flow_id: Optional[str] = None,
		user_id: Optional[str] = None,
		status: Optional[str] = None,
		limit: int = 100,
	) -> list[AgentRunRecord]:
		"""Query run records with optional filters, newest first."""
		conditions: list[str] = []
		params: list[Any] = []

		for column, value in (
			("agent_id", agent_id),
			("flow_id", flow_id),
			("user_id", user_id),
			("status", status),
		):
			if value:
				conditions.append(f"{column} = ?")
				params.append(value)

		where = " AND ".join(conditions) if conditions else "1=1"

		with self._connect() as conn:
			cursor = conn.execute(
				f"SELECT * FROM agent_runs WHERE {where} ORDER BY started_at DESC, id DESC LIMIT ?",
				[*params, limit],
			)
			rows = cursor.fetchall()

		return [
			AgentRunRecord(
				flow_id=row["flow_id"],
				flow_type=row["flow_type"],
				user_id=row["user_id"],
				agent_id=row["agent_id"],
				status=row["status"],
				started_at=row["started_at"],
				duration_ms=row["duration_ms"],
				error=row["error"],
			)
			for row in rows
		]

	def get_stats(self) -> list[AgentStats]:
		"""Get aggregate stats per agent."""
		with self._connect() as conn:
			cursor = conn.execute("""
				SELECT
					agent_id,
					COUNT(*) as run_count,
					AVG(duration_ms) as avg_duration_ms,
					SUM(CASE WHEN status = 'succeeded' THEN 1 ELSE 0 END) * 100.0 / COUNT(*) as success_rate,
					SUM(CASE WHEN status = 'timed_out' THEN 1 ELSE 0 END) as timeout_count,
					MAX(started_at) as last_run
				FROM agent_runs
				GROUP BY agent_id
				ORDER BY run_count DESC, agent_id
			""")
			rows = cursor.fetchall()

		return [
			AgentStats(
				agent_id=row["agent_id"],
				run_count=row["run_count"],
				avg_duration_ms=row["avg_duration_ms"],
				success_rate=row["success_rate"],
				timeout_count=row["timeout_count"],
				last_run=row["last_run"],
			)
			for row in rows
		]

	def clear(self, before: Optional[str] = None) -> int:
		"""Delete records, optionally only those started before a timestamp. Returns count deleted."""
		with self._connect() as conn:
			if before:
				cursor = conn.execute("DELETE FROM agent_runs WHERE started_at < ?", (before,))
			else:
				cursor = conn.execute("DELETE FROM agent_runs")
			return cursor.rowcount


def _failure_status(payload: AgentFailed) -> str:
	if payload.timed_out or isinstance(payload.error, AgentTimeoutError):
		return AgentStatus.TIMED_OUT.value
	if isinstance(payload.error, FlowCancelledError):
		return AgentStatus.CANCELLED.value
	return AgentStatus.FAILED.value


class AgentRunRecorder:
	"""
	Bus subscriber that writes an AgentRunRecord when each agent resolves.

	Usage:
		recorder = AgentRunRecorder(AgentRunStore())
		detach = recorder.attach(orchestrator.bus)
	"""

	def __init__(self, store: AgentRunStore):
		self.store = store
		# (flow_id, agent_id) -> dispatch time
		self._started: dict[tuple[str, str], str] = {}

	def attach(self, bus: EventBus) -> Callable[[], None]:
		"""Subscribe to agent events. Returns a callable that detaches."""
		unsubscribers = [
			bus.on(AGENT_DISPATCHED, self._on_event),
			bus.on(AGENT_COMPLETED, self._on_event),
			bus.on(AGENT_FAILED, self._on_event),
		]

		def detach() -> None:
			for unsubscribe in unsubscribers:
				unsubscribe()

		return detach

	def _on_event(self, event: str, payload: Any) -> None:
		if isinstance(payload, AgentDispatched):
			self._started[(payload.flow_id, payload.agent_id)] = payload.timestamp.isoformat()
			return

		if isinstance(payload, AgentCompleted):
			status, error = AgentStatus.SUCCEEDED.value, ""
		elif isinstance(payload, AgentFailed):
			status, error = _failure_status(payload), str(payload.error)
		else:
			return

		started_at = self._started.pop(
			(payload.flow_id, payload.agent_id),
			payload.timestamp.isoformat(),
		)
		try:
			self.store.record(AgentRunRecord(
				flow_id=payload.flow_id,
				flow_type=payload.flow_type,
				user_id=payload.user_id,
				agent_id=payload.agent_id,
				status=status,
				started_at=started_at,
				duration_ms=round(payload.duration_ms, 3),
				error=error,
			))
		except sqlite3.Error:
			logger.debug(f"Failed to record agent run for {payload.agent_id}", exc_info=True)
