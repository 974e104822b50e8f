"""Shared test fixtures and helpers for lifeos-orchestrator tests."""

import asyncio
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from lifeos_orchestrator.config import Config
from lifeos_orchestrator.events import EventBus
from lifeos_orchestrator.models import (
	AgentOutput,
	CalendarEvent,
	Constraint,
	HealthSnapshot,
	Injury,
	OrchestratorContext,
	Task,
	TaskPriority,
	User,
	WhiteboardEntry,
	WhiteboardEntryPayload,
	Workout,
)
from lifeos_orchestrator.orchestrator.registry import FunctionAgent

USER_ID = "user-1"
DAY = "2026-03-02"
TZ = "UTC"


def make_settings(tmp_path: Path, **overrides) -> Config:
	"""Config rooted in a temp dir so tests never touch real user dirs."""
	return Config(config_dir=tmp_path / "config", data_dir=tmp_path / "data", **overrides)


class InMemoryDataStore:
	"""
	DataStore backed by plain lists.

	Set `failures[source] = exc` to make a query raise. Sources are the
	query method names without the `find_`/`get_` prefix, e.g. "events".
	"""

	def __init__(self, user: Optional[User] = None):
		self.user = user if user is not None else User(id=USER_ID, name="Sam", timezone=TZ)
		self.tasks: list[Task] = []
		self.events: list[CalendarEvent] = []
		self.health: list[HealthSnapshot] = []
		self.workouts: list[Workout] = []
		self.injuries: list[Injury] = []
		self.constraints: list[Constraint] = []
		self.whiteboard: list[WhiteboardEntry] = []
		self.failures: dict[str, Exception] = {}
		self.calls: list[str] = []

	def _check(self, source: str) -> None:
		self.calls.append(source)
		if source in self.failures:
			raise self.failures[source]

	async def get_user(self, user_id: str) -> Optional[User]:
		self._check("user")
		return self.user if self.user and self.user.id == user_id else None

	async def find_open_tasks(self, user_id: str) -> list[Task]:
		self._check("tasks")
		return [t for t in self.tasks if t.is_open]

	async def find_completed_tasks(self, user_id: str, day: date) -> list[Task]:
		self._check("completed_tasks")
		return [
			t for t in self.tasks
			if t.status == "done" and t.completed_at and t.completed_at.date() == day
		]

	async def find_events(self, user_id: str, day: date) -> list[CalendarEvent]:
		self._check("events")
		return sorted(
			(e for e in self.events if e.start_time.date() == day),
			key=lambda e: e.start_time,
		)

	async def find_health_snapshot(self, user_id: str, day: date) -> Optional[HealthSnapshot]:
		self._check("health")
		for snapshot in self.health:
			if snapshot.snapshot_date == day:
				return snapshot
		return None

	async def find_recent_workouts(self, user_id: str, day: date, days: int = 7) -> list[Workout]:
		self._check("recent_workouts")
		since = day - timedelta(days=days)
		return sorted(
			(w for w in self.workouts if w.status == "completed" and since <= w.scheduled_date <= day),
			key=lambda w: w.scheduled_date,
			reverse=True,
		)

	async def find_upcoming_workouts(self, user_id: str, day: date, limit: int = 3) -> list[Workout]:
		self._check("upcoming_workouts")
		upcoming = sorted(
			(w for w in self.workouts if w.status == "planned" and w.scheduled_date >= day),
			key=lambda w: w.scheduled_date,
		)
		return upcoming[:limit]

	async def find_active_injuries(self, user_id: str) -> list[Injury]:
		self._check("injuries")
		return [i for i in self.injuries if i.status in ("active", "recovering")]

	async def find_active_constraints(self, user_id: str) -> list[Constraint]:
		self._check("constraints")
		return [c for c in self.constraints if c.is_active]

	async def find_recent_whiteboard(self, user_id: str, limit: int = 10) -> list[WhiteboardEntry]:
		self._check("whiteboard")
		return sorted(self.whiteboard, key=lambda e: e.created_at, reverse=True)[:limit]

	async def get_entity(self, user_id: str, entity_type: str, entity_id: str) -> Optional[dict[str, Any]]:
		self._check("entity")
		pools = {
			"task": self.tasks,
			"event": self.events,
			"health_snapshot": self.health,
			"workout": self.workouts,
			"injury": self.injuries,
		}
		for record in pools.get(entity_type, []):
			if record.id == entity_id:
				return record.model_dump(mode="json")
		return None

	async def add_whiteboard_entries(self, entries: list[WhiteboardEntry]) -> None:
		self._check("write_whiteboard")
		self.whiteboard.extend(entries)


def populated_store() -> InMemoryDataStore:
	"""A store with a realistic day of data for USER_ID on DAY."""
	store = InMemoryDataStore()
	day = date.fromisoformat(DAY)
	store.tasks = [
		Task(id="t-low", title="Clean inbox", priority=TaskPriority.P4_LOW),
		Task(id="t-crit", title="File taxes", priority=TaskPriority.P1_CRITICAL, due_date=day),
		Task(id="t-med", title="Book dentist", priority=TaskPriority.P3_MEDIUM),
		Task(
			id="t-done",
			title="Email coach",
			status="done",
			completed_at=datetime(2026, 3, 2, 10, 30),
		),
	]
	store.events = [
		CalendarEvent(
			id="e-standup",
			title="Standup",
			start_time=datetime(2026, 3, 2, 9, 0),
			end_time=datetime(2026, 3, 2, 9, 15),
			event_type="meeting",
		),
	]
	store.health = [HealthSnapshot(id="h-1", snapshot_date=day, sleep_hours=7.5, resting_hr=52)]
	store.workouts = [
		Workout(
			id="w-done",
			title="Tempo run",
			scheduled_date=day - timedelta(days=1),
			workout_type="tempo",
			status="completed",
		),
		Workout(id="w-today", title="Easy run", scheduled_date=day, workout_type="easy"),
		Workout(id="w-next", title="Long run", scheduled_date=day + timedelta(days=3), workout_type="long"),
	]
	store.injuries = [Injury(id="i-1", body_part="left calf", severity=3)]
	store.constraints = [Constraint(id="c-1", name="Work hours", start_time="09:00", end_time="17:00")]
	return store


def make_context(**fields) -> OrchestratorContext:
	"""An OrchestratorContext for DAY with overridable fields."""
	values = {"user_id": USER_ID, "date": DAY, "user_name": "Sam", "timezone": TZ}
	values.update(fields)
	return OrchestratorContext(**values)


def scripted_agent(
	agent_id: str,
	content: str = "",
	structured_data: Optional[dict[str, Any]] = None,
	entries: tuple[WhiteboardEntryPayload, ...] = (),
	delay: float = 0.0,
	seen: Optional[list[OrchestratorContext]] = None,
) -> FunctionAgent:
	"""Agent that returns a fixed output, optionally after a delay."""

	async def run(context: OrchestratorContext) -> AgentOutput:
		if seen is not None:
			seen.append(context)
		if delay:
			await asyncio.sleep(delay)
		return AgentOutput(
			agent_id=agent_id,
			content=content or f"{agent_id} output",
			structured_data=structured_data or {},
			whiteboard_entries=entries,
		)

	return FunctionAgent(agent_id, run)


def failing_agent(agent_id: str, error: Exception) -> FunctionAgent:
	"""Agent that always raises."""

	async def run(context: OrchestratorContext) -> AgentOutput:
		raise error

	return FunctionAgent(agent_id, run)


class EventRecorder:
	"""Collects (event, payload) pairs from a bus."""

	def __init__(self, bus: EventBus):
		self.events: list[tuple[str, Any]] = []
		self.detach = bus.on("*", self._record)

	def _record(self, event: str, payload: Any) -> None:
		self.events.append((event, payload))

	@property
	def names(self) -> list[str]:
		return [name for name, _ in self.events]

	def payloads(self, event: str) -> list[Any]:
		return [payload for name, payload in self.events if name == event]
