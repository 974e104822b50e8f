"""Tests for the result aggregator."""

from datetime import date, datetime

import pytest

from lifeos_orchestrator.errors import AggregationError
from lifeos_orchestrator.models import (
	AgentOutput,
	AgentResult,
	AgentStatus,
	CalendarEvent,
	ContextScope,
	DailyPlan,
	FlowType,
	Reflection,
	Task,
	TaskPriority,
	WhiteboardEntryPayload,
	WhiteboardEntryType,
	Workout,
)
from lifeos_orchestrator.orchestrator.aggregator import ResultAggregator, priority_order

from .helpers import DAY, InMemoryDataStore, make_context


def ok(agent_id: str, content: str = "", **kwargs) -> AgentResult:
	return AgentResult(
		agent_id=agent_id,
		status=AgentStatus.SUCCEEDED,
		output=AgentOutput(agent_id=agent_id, content=content, **kwargs),
	)


def failed(agent_id: str, status: AgentStatus = AgentStatus.FAILED) -> AgentResult:
	return AgentResult(agent_id=agent_id, status=status, error="boom", error_type="AgentInvocationError")


def test_priority_order():
	"""Known agents by priority table, unknown agents last and alphabetical."""
	ordered = priority_order(["zeta-agent", "planning-coach", "alpha-agent", "health-agent", "training-coach"])
	assert ordered == ["training-coach", "health-agent", "planning-coach", "alpha-agent", "zeta-agent"]


class TestDailyPlan:
	"""Morning aggregation."""

	@pytest.mark.asyncio
	async def test_empty_day(self):
		"""No tasks, events, or outputs still yields a plan."""
		aggregator = ResultAggregator(InMemoryDataStore())

		aggregate = await aggregator.aggregate(FlowType.MORNING, make_context(), {})

		plan = aggregate.result
		assert isinstance(plan, DailyPlan)
		assert plan.schedule == ()
		assert plan.prioritized_tasks == ()
		assert plan.workout_plan is None
		assert plan.summary
		assert aggregate.whiteboard_entries == []

	@pytest.mark.asyncio
	async def test_summary_from_highest_priority(self):
		aggregator = ResultAggregator(InMemoryDataStore())
		results = {
			"health-agent": ok("health-agent", "Recovery is good."),
			"training-coach": ok("training-coach", "Run 5 miles easy."),
		}

		aggregate = await aggregator.aggregate(FlowType.MORNING, make_context(), results)

		assert aggregate.result.summary == "Run 5 miles easy."

	@pytest.mark.asyncio
	async def test_health_status(self):
		aggregator = ResultAggregator(InMemoryDataStore())
		results = {
			"health-agent": ok(
				"health-agent",
				"HRV dipped.",
				structured_data={"recoveryScore": 0.62},
				whiteboard_entries=(
					WhiteboardEntryPayload(entry_type=WhiteboardEntryType.ALERT, content="Elevated resting HR"),
					WhiteboardEntryPayload(entry_type=WhiteboardEntryType.SUGGESTION, content="Sleep by 10pm"),
				),
			),
		}

		aggregate = await aggregator.aggregate(FlowType.MORNING, make_context(), results)

		status = aggregate.result.health_status
		assert status.recovery_score == 0.62
		assert status.alerts == ("Elevated resting HR",)
		assert status.recommendations == ("Sleep by 10pm",)
		assert [e.content for e in aggregate.whiteboard_entries] == ["Elevated resting HR", "Sleep by 10pm"]

	@pytest.mark.asyncio
	async def test_top_tasks_by_priority(self):
		aggregator = ResultAggregator(InMemoryDataStore())
		tasks = tuple(
			Task(id=f"t{i}", title=f"Task {i}", priority=priority)
			for i, priority in enumerate([
				TaskPriority.P4_LOW,
				TaskPriority.P2_HIGH,
				TaskPriority.P1_CRITICAL,
				TaskPriority.P3_MEDIUM,
				TaskPriority.P4_LOW,
				TaskPriority.P2_HIGH,
			])
		)

		aggregate = await aggregator.aggregate(FlowType.MORNING, make_context(tasks=tasks), {})

		assert [t.id for t in aggregate.result.prioritized_tasks] == ["t2", "t1", "t5", "t3", "t0"]

	@pytest.mark.asyncio
	async def test_training_wins_conflicting_slot(self):
		"""training-coach beats planning-coach on the same time slot."""
		aggregator = ResultAggregator(InMemoryDataStore())
		event = CalendarEvent(
			id="e1",
			title="Standup",
			start_time=datetime(2026, 3, 2, 9, 0),
			end_time=datetime(2026, 3, 2, 9, 15),
		)
		results = {
			"planning-coach": ok("planning-coach", structured_data={"schedule": [
				{"time": "07:00", "title": "Deep work"},
				{"time": "12:00", "title": "Errands"},
			]}),
			"training-coach": ok("training-coach", structured_data={"schedule": [
				{"time": "07:00", "title": "Easy run", "type": "workout"},
			]}),
		}

		aggregate = await aggregator.aggregate(FlowType.MORNING, make_context(events=(event,)), results)

		schedule = [(item.time, item.title, item.source_agent) for item in aggregate.result.schedule]
		assert schedule == [
			("07:00", "Easy run", "training-coach"),
			("09:00", "Standup", None),
			("12:00", "Errands", "planning-coach"),
		]

	@pytest.mark.asyncio
	async def test_invalid_schedule_item_raises(self):
		aggregator = ResultAggregator(InMemoryDataStore())
		results = {"planning-coach": ok("planning-coach", structured_data={"schedule": [{"time": "noon"}]})}

		with pytest.raises(AggregationError):
			await aggregator.aggregate(FlowType.MORNING, make_context(), results)

	@pytest.mark.asyncio
	async def test_workout_plan(self):
		aggregator = ResultAggregator(InMemoryDataStore())
		workout = Workout(id="w1", title="Easy run", scheduled_date=date.fromisoformat(DAY))
		results = {"training-coach": ok("training-coach", structured_data={
			"workoutPlan": {"modifications": ["Cap HR at 145"], "rationale": "Calf is sore"},
		})}

		aggregate = await aggregator.aggregate(
			FlowType.MORNING, make_context(upcoming_workouts=(workout,)), results
		)

		plan = aggregate.result.workout_plan
		assert plan.workout == workout
		assert plan.modifications == ("Cap HR at 145",)
		assert plan.rationale == "Calf is sore"

	@pytest.mark.asyncio
	async def test_failed_agents_listed_unavailable(self):
		"""Failed agents contribute nothing and are reported."""
		aggregator = ResultAggregator(InMemoryDataStore())
		results = {
			"health-agent": failed("health-agent", AgentStatus.TIMED_OUT),
			"training-coach": ok("training-coach", "Rest day."),
		}

		aggregate = await aggregator.aggregate(
			FlowType.MORNING, make_context(unavailable=("injuries",)), results
		)

		assert aggregate.unavailable == ("health-agent", "injuries")
		assert aggregate.result.unavailable_modules == ("health-agent", "injuries")
		assert aggregate.result.health_status.recovery_score is None


class TestReflection:
	"""Evening aggregation."""

	@pytest.mark.asyncio
	async def test_reflection(self):
		aggregator = ResultAggregator(InMemoryDataStore())
		done_task = Task(id="t1", title="Ship report", status="done")
		done_run = Workout(
			id="w1", title="Tempo", scheduled_date=date.fromisoformat(DAY), status="completed",
		)
		context = make_context(completed_tasks=(done_task,), recent_workouts=(done_run,))
		results = {"reflection-agent": ok(
			"reflection-agent",
			"Solid day.",
			structured_data={"insights": ["Mornings are productive"], "tomorrowFocus": ["Sleep early"]},
			whiteboard_entries=(
				WhiteboardEntryPayload(entry_type=WhiteboardEntryType.INSIGHT, content="Tempo pace improving"),
			),
		)}

		aggregate = await aggregator.aggregate(FlowType.EVENING, context, results)

		reflection = aggregate.result
		assert isinstance(reflection, Reflection)
		assert reflection.summary == "Solid day."
		assert reflection.insights == ("Mornings are productive", "Tempo pace improving")
		assert reflection.tomorrow_focus == ("Sleep early",)
		assert reflection.completed_tasks == (done_task,)
		assert reflection.completed_workouts == (done_run,)


class TestWhiteboard:
	"""Entry generation and persistence."""

	@pytest.mark.asyncio
	async def test_scoped_output_without_payloads_yields_observation(self):
		store = InMemoryDataStore()
		aggregator = ResultAggregator(store)
		context = make_context(scope=ContextScope(entity_type="workout", entity_id="w-42"))
		results = {"training-coach": ok("training-coach", "Great negative split.")}

		aggregate = await aggregator.aggregate(FlowType.TRIGGER, context, results)

		assert aggregate.result is None
		[entry] = aggregate.whiteboard_entries
		assert entry.entry_type == WhiteboardEntryType.OBSERVATION
		assert entry.related_entity_type == "workout"
		assert entry.related_entity_id == "w-42"
		assert entry.agent_id == "training-coach"
		assert entry.context_date == date.fromisoformat(DAY)
		assert store.whiteboard == [entry]

	@pytest.mark.asyncio
	async def test_payload_entity_overrides_scope(self):
		aggregator = ResultAggregator(InMemoryDataStore())
		context = make_context(scope=ContextScope(entity_type="workout", entity_id="w-42"))
		payload = WhiteboardEntryPayload(
			entry_type=WhiteboardEntryType.ALERT,
			content="Calf tightness",
			related_entity_type="injury",
			related_entity_id="i-1",
		)
		results = {"training-coach": ok("training-coach", whiteboard_entries=(payload,))}

		aggregate = await aggregator.aggregate(FlowType.TRIGGER, context, results)

		assert aggregate.whiteboard_entries[0].related_entity_id == "i-1"

	@pytest.mark.asyncio
	async def test_write_failure_raises(self):
		store = InMemoryDataStore()
		store.failures["write_whiteboard"] = ConnectionError("read-only replica")
		aggregator = ResultAggregator(store)
		payload = WhiteboardEntryPayload(entry_type=WhiteboardEntryType.SUGGESTION, content="Hydrate")
		results = {"health-agent": ok("health-agent", whiteboard_entries=(payload,))}

		with pytest.raises(AggregationError):
			await aggregator.aggregate(FlowType.MORNING, make_context(), results)

	@pytest.mark.asyncio
	async def test_mismatched_agent_id_raises(self):
		aggregator = ResultAggregator(InMemoryDataStore())
		results = {"health-agent": AgentResult(
			agent_id="health-agent",
			status=AgentStatus.SUCCEEDED,
			output=AgentOutput(agent_id="training-coach", content="wrong"),
		)}

		with pytest.raises(AggregationError, match="produced by training-coach"):
			await aggregator.aggregate(FlowType.MORNING, make_context(), results)


@pytest.mark.asyncio
async def test_chat_result_is_primary_output():
	aggregator = ResultAggregator(InMemoryDataStore())
	results = {
		"health-agent": ok("health-agent", "You slept 7h."),
		"nutrition-agent": ok("nutrition-agent", "Eat more protein."),
	}

	aggregate = await aggregator.aggregate(FlowType.CHAT, make_context(), results, primary_agent="health-agent")

	assert aggregate.result.content == "You slept 7h."
