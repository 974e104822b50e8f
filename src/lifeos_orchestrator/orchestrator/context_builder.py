"""
Context Builder - Assembles the per-flow snapshot handed to agents.

User, tasks and calendar events are mandatory: if any of them cannot be
loaded the flow cannot run and `ContextBuildError` is raised. Health,
workouts, injuries, constraints and whiteboard history are best-effort;
a failing source is recorded in `context.unavailable` and left empty.
"""

import asyncio
import logging
from datetime import date
from typing import Any, Awaitable, Optional

from ..errors import ContextBuildError
from ..models import ContextScope, EventTrigger, EventTriggerType, OrchestratorContext
from ..store import DataStore

logger = logging.getLogger(__name__)

RECENT_WORKOUT_DAYS = 7
UPCOMING_WORKOUT_LIMIT = 3

# trigger type -> entity type its entity_id refers to
TRIGGER_ENTITY_TYPES: dict[EventTriggerType, str] = {
	EventTriggerType.WORKOUT_COMPLETED: "workout",
	EventTriggerType.TASK_COMPLETED: "task",
	EventTriggerType.TASK_ADDED: "task",
	EventTriggerType.CALENDAR_CHANGE: "event",
	EventTriggerType.HEALTH_CHECKIN: "health_snapshot",
}


class ContextBuilder:
	"""
	Builds OrchestratorContext snapshots from a DataStore.

	All queries for one build run concurrently. Building twice against
	unchanged data yields equal snapshots.
	"""

	def __init__(self, store: DataStore, whiteboard_limit: int = 10):
		self.store = store
		self.whiteboard_limit = whiteboard_limit

	async def build(
		self,
		user_id: str,
		date: str,
		timezone: str,
		*,
		trigger: Optional[EventTrigger] = None,
		include_activity: bool = False,
	) -> OrchestratorContext:
		"""
		Build a context snapshot for a user and ISO date.

		Args:
			user_id: User to load data for
			date: ISO date (YYYY-MM-DD) the flow is about
			timezone: Timezone identifier stored on the snapshot
			trigger: Scope the snapshot to the trigger's entity
			include_activity: Also load tasks completed on the date

		Raises:
			ContextBuildError: If a mandatory source cannot be loaded
		"""
		day = self._parse_date(date)
		store = self.store

		mandatory = await asyncio.gather(
			store.get_user(user_id),
			store.find_open_tasks(user_id),
			store.find_events(user_id, day),
			return_exceptions=True,
		)
		for source, result in zip(("user", "tasks", "events"), mandatory):
			if isinstance(result, BaseException):
				if not isinstance(result, Exception):
					raise result
				raise ContextBuildError(
					f"Failed to load {source} for {user_id}: {result}",
					context={"user_id": user_id, "date": date, "source": source},
				) from result
		user, tasks, events = mandatory
		if user is None:
			raise ContextBuildError(
				f"Unknown user: {user_id}",
				context={"user_id": user_id, "date": date, "source": "user"},
			)

		optional: dict[str, Awaitable[Any]] = {
			"health": store.find_health_snapshot(user_id, day),
			"recent_workouts": store.find_recent_workouts(user_id, day, RECENT_WORKOUT_DAYS),
			"upcoming_workouts": store.find_upcoming_workouts(user_id, day, UPCOMING_WORKOUT_LIMIT),
			"injuries": store.find_active_injuries(user_id),
			"constraints": store.find_active_constraints(user_id),
			"whiteboard": store.find_recent_whiteboard(user_id, self.whiteboard_limit),
		}
		if include_activity:
			optional["completed_tasks"] = store.find_completed_tasks(user_id, day)

		loaded = await self._load_best_effort(user_id, optional)
		unavailable = tuple(name for name in optional if name not in loaded)

		scope = None
		if trigger is not None:
			scope = await self._resolve_scope(user_id, trigger)

		return OrchestratorContext(
			user_id=user_id,
			date=day.isoformat(),
			user_name=user.name,
			timezone=timezone,
			events=tuple(events),
			tasks=tuple(tasks),
			completed_tasks=tuple(loaded.get("completed_tasks") or ()),
			health_snapshot=loaded.get("health"),
			recent_workouts=tuple(loaded.get("recent_workouts") or ()),
			upcoming_workouts=tuple(loaded.get("upcoming_workouts") or ()),
			active_injuries=tuple(loaded.get("injuries") or ()),
			constraints=tuple(loaded.get("constraints") or ()),
			whiteboard_entries=tuple(loaded.get("whiteboard") or ()),
			unavailable=unavailable,
			trigger=trigger,
			scope=scope,
		)

	async def _load_best_effort(self, user_id: str, queries: dict[str, Awaitable[Any]]) -> dict[str, Any]:
		results = await asyncio.gather(*queries.values(), return_exceptions=True)
		loaded: dict[str, Any] = {}
		for name, result in zip(queries, results):
			if isinstance(result, BaseException):
				if not isinstance(result, Exception):
					raise result
				logger.warning(f"Context source '{name}' unavailable for {user_id}: {result}")
				continue
			loaded[name] = result
		return loaded

	async def _resolve_scope(self, user_id: str, trigger: EventTrigger) -> Optional[ContextScope]:
		entity_type = TRIGGER_ENTITY_TYPES.get(trigger.type)
		if entity_type is None or not trigger.entity_id:
			return None

		try:
			data = await self.store.get_entity(user_id, entity_type, trigger.entity_id)
		except Exception as e:
			logger.warning(f"Could not load {entity_type} {trigger.entity_id}: {e}")
			data = None

		return ContextScope(entity_type=entity_type, entity_id=trigger.entity_id, data=data)

	@staticmethod
	def _parse_date(value: str) -> date:
		try:
			return date.fromisoformat(value)
		except (TypeError, ValueError) as e:
			raise ContextBuildError(f"Invalid date: {value!r}", context={"date": value}) from e
