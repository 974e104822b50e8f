"""
Data Store - Persistence contract consumed by the orchestrator.

The orchestrator only depends on the `DataStore` protocol: read queries
scoped by user and date, plus appending whiteboard entries. `SQLiteDataStore`
is a reference adapter backed by aiosqlite, storing each record as JSON
alongside the columns the queries filter on.
"""

import asyncio
import logging
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

import aiosqlite
from pydantic import BaseModel

from .models import (
	CalendarEvent,
	Constraint,
	HealthSnapshot,
	Injury,
	Task,
	User,
	WhiteboardEntry,
	Workout,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class DataStore(Protocol):
	"""Query/write contract of the persistence layer."""

	async def get_user(self, user_id: str) -> Optional[User]: ...

	async def find_open_tasks(self, user_id: str) -> list[Task]: ...

	async def find_completed_tasks(self, user_id: str, day: date) -> list[Task]: ...

	async def find_events(self, user_id: str, day: date) -> list[CalendarEvent]: ...

	async def find_health_snapshot(self, user_id: str, day: date) -> Optional[HealthSnapshot]: ...

	async def find_recent_workouts(self, user_id: str, day: date, days: int = 7) -> list[Workout]: ...

	async def find_upcoming_workouts(self, user_id: str, day: date, limit: int = 3) -> list[Workout]: ...

	async def find_active_injuries(self, user_id: str) -> list[Injury]: ...

	async def find_active_constraints(self, user_id: str) -> list[Constraint]: ...

	async def find_recent_whiteboard(self, user_id: str, limit: int = 10) -> list[WhiteboardEntry]: ...

	async def get_entity(self, user_id: str, entity_type: str, entity_id: str) -> Optional[dict[str, Any]]: ...

	async def add_whiteboard_entries(self, entries: list[WhiteboardEntry]) -> None: ...


# record type -> table name
_TABLES: dict[type, str] = {
	User: "users",
	Task: "tasks",
	CalendarEvent: "calendar_events",
	HealthSnapshot: "health_snapshots",
	Workout: "workouts",
	Injury: "injuries",
	Constraint: "constraints",
	WhiteboardEntry: "whiteboard_entries",
}

# entity type used in trigger scopes -> record type
ENTITY_TYPES: dict[str, type] = {
	"task": Task,
	"event": CalendarEvent,
	"health_snapshot": HealthSnapshot,
	"workout": Workout,
	"injury": Injury,
}


def _index_columns(record: BaseModel) -> tuple[Optional[str], Optional[str], str]:
	"""Derive (day, status, sort_key) columns for a record."""
	if isinstance(record, Task):
		day = record.completed_at.date() if record.completed_at else record.due_date
		status = record.status
	elif isinstance(record, CalendarEvent):
		day, status = record.start_time.date(), None
		return day.isoformat(), status, record.start_time.isoformat()
	elif isinstance(record, HealthSnapshot):
		day, status = record.snapshot_date, None
	elif isinstance(record, Workout):
		day, status = record.scheduled_date, record.status
	elif isinstance(record, Injury):
		day, status = None, record.status
	elif isinstance(record, Constraint):
		day, status = None, "active" if record.is_active else "inactive"
	elif isinstance(record, WhiteboardEntry):
		return record.context_date.isoformat(), None, record.created_at.isoformat()
	else:
		day, status = None, None
	day_str = day.isoformat() if day else None
	return day_str, status, day_str or ""


class SQLiteDataStore:
	"""
	SQLite-backed implementation of the DataStore protocol.

	Usage:
		store = SQLiteDataStore("data/lifeos.db")
		await store.init()

		await store.save("user-1", Task(id="t1", title="Email coach"))
		tasks = await store.find_open_tasks("user-1")
	"""

	def __init__(self, db_path: str):
		"""Initialize the data store."""
		self.db_path = Path(db_path)
		self.db_path.parent.mkdir(parents=True, exist_ok=True)
		self._db: Optional[aiosqlite.Connection] = None
		self._init_lock = asyncio.Lock()

	async def init(self):
		"""Open the connection and create the schema. Safe to call concurrently."""
		async with self._init_lock:
			if self._db is not None:
				return
			db = await aiosqlite.connect(str(self.db_path))
			db.row_factory = aiosqlite.Row

			for table in _TABLES.values():
				await db.execute(f"""
					CREATE TABLE IF NOT EXISTS {table} (
						id TEXT NOT NULL,
						user_id TEXT NOT NULL,
						day TEXT,
						status TEXT,
						sort_key TEXT NOT NULL DEFAULT '',
						data TEXT NOT NULL,
						PRIMARY KEY (user_id, id)
					)
				""")
				await db.execute(f"""
					CREATE INDEX IF NOT EXISTS idx_{table}_user_day ON {table}(user_id, day)
				""")

			await db.commit()
			self._db = db
		logger.info(f"Data store initialized: {self.db_path}")

	async def close(self):
		"""Close the database connection."""
		async with self._init_lock:
			if self._db:
				await self._db.close()
				self._db = None

	async def _conn(self) -> aiosqlite.Connection:
		if self._db is None:
			await self.init()
		return self._db

	async def save(self, user_id: str, record: BaseModel) -> None:
		"""Insert or replace a domain record for a user."""
		table = _TABLES.get(type(record))
		if table is None:
			raise TypeError(f"Unsupported record type: {type(record).__name__}")

		db = await self._conn()
		day, status, sort_key = _index_columns(record)
		await db.execute(
			f"""
			INSERT OR REPLACE INTO {table} (id, user_id, day, status, sort_key, data)
			VALUES (?, ?, ?, ?, ?, ?)
			""",
			(record.id, user_id, day, status, sort_key, record.model_dump_json()),
		)
		await db.commit()

	async def _select(self, model: type, where: str, params: tuple, suffix: str = "") -> list:
		db = await self._conn()
		async with db.execute(
			f"SELECT data FROM {_TABLES[model]} WHERE {where} {suffix}",
			params,
		) as cursor:
			rows = await cursor.fetchall()
		return [model.model_validate_json(row["data"]) for row in rows]

	async def get_user(self, user_id: str) -> Optional[User]:
		users = await self._select(User, "user_id = ? AND id = ?", (user_id, user_id))
		return users[0] if users else None

	async def find_open_tasks(self, user_id: str) -> list[Task]:
		return await self._select(
			Task,
			"user_id = ? AND status NOT IN ('done', 'archived')",
			(user_id,),
			"ORDER BY sort_key",
		)

	async def find_completed_tasks(self, user_id: str, day: date) -> list[Task]:
		return await self._select(
			Task, "user_id = ? AND status = 'done' AND day = ?", (user_id, day.isoformat())
		)

	async def find_events(self, user_id: str, day: date) -> list[CalendarEvent]:
		return await self._select(
			CalendarEvent, "user_id = ? AND day = ?", (user_id, day.isoformat()), "ORDER BY sort_key"
		)

	async def find_health_snapshot(self, user_id: str, day: date) -> Optional[HealthSnapshot]:
		snapshots = await self._select(
			HealthSnapshot, "user_id = ? AND day = ?", (user_id, day.isoformat()), "LIMIT 1"
		)
		return snapshots[0] if snapshots else None

	async def find_recent_workouts(self, user_id: str, day: date, days: int = 7) -> list[Workout]:
		since = day - timedelta(days=days)
		return await self._select(
			Workout,
			"user_id = ? AND status = 'completed' AND day >= ? AND day <= ?",
			(user_id, since.isoformat(), day.isoformat()),
			"ORDER BY day DESC",
		)

	async def find_upcoming_workouts(self, user_id: str, day: date, limit: int = 3) -> list[Workout]:
		return await self._select(
			Workout,
			"user_id = ? AND status = 'planned' AND day >= ?",
			(user_id, day.isoformat()),
			f"ORDER BY day ASC LIMIT {int(limit)}",
		)

	async def find_active_injuries(self, user_id: str) -> list[Injury]:
		return await self._select(
			Injury, "user_id = ? AND status IN ('active', 'recovering')", (user_id,)
		)

	async def find_active_constraints(self, user_id: str) -> list[Constraint]:
		return await self._select(Constraint, "user_id = ? AND status = 'active'", (user_id,))

	async def find_recent_whiteboard(self, user_id: str, limit: int = 10) -> list[WhiteboardEntry]:
		return await self._select(
			WhiteboardEntry,
			"user_id = ?",
			(user_id,),
			f"ORDER BY sort_key DESC LIMIT {int(limit)}",
		)

	async def get_entity(self, user_id: str, entity_type: str, entity_id: str) -> Optional[dict[str, Any]]:
		"""Load a single record by entity type, as a JSON-compatible dict."""
		model = ENTITY_TYPES.get(entity_type)
		if model is None:
			return None
		records = await self._select(model, "user_id = ? AND id = ?", (user_id, entity_id))
		return records[0].model_dump(mode="json") if records else None

	async def add_whiteboard_entries(self, entries: list[WhiteboardEntry]) -> None:
		for entry in entries:
			await self.save(entry.user_id, entry)
		if entries:
			logger.info(f"Wrote {len(entries)} whiteboard entries")
