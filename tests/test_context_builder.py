"""Tests for the context builder."""

from datetime import date, datetime

import pytest

from lifeos_orchestrator.errors import ContextBuildError
from lifeos_orchestrator.models import (
	EventTrigger,
	EventTriggerType,
	WhiteboardEntry,
	WhiteboardEntryType,
)
from lifeos_orchestrator.orchestrator.context_builder import ContextBuilder

from .helpers import DAY, TZ, USER_ID, InMemoryDataStore, populated_store


class TestContextBuilder:
	"""Tests for ContextBuilder.build."""

	@pytest.mark.asyncio
	async def test_full_context(self):
		"""All sources are loaded into the snapshot."""
		builder = ContextBuilder(populated_store())

		context = await builder.build(USER_ID, DAY, TZ)

		assert context.user_id == USER_ID
		assert context.user_name == "Sam"
		assert context.date == DAY
		assert {t.id for t in context.tasks} == {"t-low", "t-crit", "t-med"}
		assert [e.id for e in context.events] == ["e-standup"]
		assert context.health_snapshot.sleep_hours == 7.5
		assert [w.id for w in context.recent_workouts] == ["w-done"]
		assert [w.id for w in context.upcoming_workouts] == ["w-today", "w-next"]
		assert len(context.active_injuries) == 1
		assert len(context.constraints) == 1
		assert context.unavailable == ()
		assert context.completed_tasks == ()

	@pytest.mark.asyncio
	async def test_idempotent(self):
		"""Two builds over unchanged data are structurally equal."""
		builder = ContextBuilder(populated_store())

		first = await builder.build(USER_ID, DAY, TZ)
		second = await builder.build(USER_ID, DAY, TZ)

		assert first == second

	@pytest.mark.asyncio
	@pytest.mark.parametrize("source", ["tasks", "events", "user"])
	async def test_mandatory_failure_raises(self, source):
		"""Tasks, calendar and user lookups are mandatory."""
		store = populated_store()
		store.failures[source] = ConnectionError("database down")
		builder = ContextBuilder(store)

		with pytest.raises(ContextBuildError) as exc_info:
			await builder.build(USER_ID, DAY, TZ)

		assert exc_info.value.context["source"] == source
		assert isinstance(exc_info.value.__cause__, ConnectionError)

	@pytest.mark.asyncio
	async def test_unknown_user_raises(self):
		builder = ContextBuilder(InMemoryDataStore())
		with pytest.raises(ContextBuildError, match="Unknown user"):
			await builder.build("ghost", DAY, TZ)

	@pytest.mark.asyncio
	async def test_invalid_date_raises(self):
		builder = ContextBuilder(InMemoryDataStore())
		with pytest.raises(ContextBuildError, match="Invalid date"):
			await builder.build(USER_ID, "yesterday", TZ)

	@pytest.mark.asyncio
	async def test_best_effort_sources_degrade(self):
		"""Failing optional sources are listed as unavailable, not raised."""
		store = populated_store()
		store.failures["health"] = TimeoutError("wearable sync down")
		store.failures["injuries"] = RuntimeError("bad row")
		builder = ContextBuilder(store)

		context = await builder.build(USER_ID, DAY, TZ)

		assert context.health_snapshot is None
		assert context.active_injuries == ()
		assert set(context.unavailable) == {"health", "injuries"}
		assert not context.has("health")
		assert len(context.tasks) == 3

	@pytest.mark.asyncio
	async def test_include_activity_loads_completed_tasks(self):
		builder = ContextBuilder(populated_store())

		context = await builder.build(USER_ID, DAY, TZ, include_activity=True)

		assert [t.id for t in context.completed_tasks] == ["t-done"]

	@pytest.mark.asyncio
	async def test_whiteboard_limit(self):
		"""Only the most recent whiteboard entries are loaded."""
		store = populated_store()
		store.whiteboard = [
			WhiteboardEntry(
				user_id=USER_ID,
				agent_id="health-agent",
				entry_type=WhiteboardEntryType.OBSERVATION,
				content=f"note {i}",
				context_date=date(2026, 3, 1),
				created_at=datetime(2026, 3, 1, 8, i),
			)
			for i in range(6)
		]
		builder = ContextBuilder(store, whiteboard_limit=4)

		context = await builder.build(USER_ID, DAY, TZ)

		assert [e.content for e in context.whiteboard_entries] == ["note 5", "note 4", "note 3", "note 2"]

	@pytest.mark.asyncio
	async def test_trigger_scopes_context(self):
		"""A workout trigger resolves the workout into the scope."""
		builder = ContextBuilder(populated_store())
		trigger = EventTrigger(type=EventTriggerType.WORKOUT_COMPLETED, entity_id="w-done")

		context = await builder.build(USER_ID, DAY, TZ, trigger=trigger)

		assert context.trigger == trigger
		assert context.scope.entity_type == "workout"
		assert context.scope.entity_id == "w-done"
		assert context.scope.data["title"] == "Tempo run"

	@pytest.mark.asyncio
	async def test_scope_lookup_failure_keeps_scope(self):
		"""An entity that cannot be loaded still scopes the context, without data."""
		store = populated_store()
		store.failures["entity"] = RuntimeError("lookup failed")
		builder = ContextBuilder(store)
		trigger = EventTrigger(type=EventTriggerType.TASK_ADDED, entity_id="t-new")

		context = await builder.build(USER_ID, DAY, TZ, trigger=trigger)

		assert context.scope.entity_type == "task"
		assert context.scope.entity_id == "t-new"
		assert context.scope.data is None

	@pytest.mark.asyncio
	async def test_weekly_review_has_no_scope(self):
		builder = ContextBuilder(populated_store())
		trigger = EventTrigger(type=EventTriggerType.WEEKLY_REVIEW)

		context = await builder.build(USER_ID, DAY, TZ, trigger=trigger)

		assert context.scope is None
		assert context.trigger == trigger
