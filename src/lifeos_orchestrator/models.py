"""
Models - Pydantic schemas for orchestrator inputs, snapshots, and results.

Domain records mirror the subset of the LifeOS data model the orchestrator
reads. Everything an agent can see is frozen: collections are tuples,
free-form payloads are read-only mappings and models reject attribute
assignment, so a context snapshot cannot be changed once
a flow starts dispatching.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from types import MappingProxyType
from typing import Annotated, Any, Mapping, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, PlainSerializer


class _Record(BaseModel):
	"""Base for immutable records."""
	model_config = ConfigDict(frozen=True)


def _freeze(value: Any) -> Any:
	if isinstance(value, Mapping):
		return MappingProxyType({k: _freeze(v) for k, v in value.items()})
	if isinstance(value, (list, tuple)):
		return tuple(_freeze(v) for v in value)
	return value


def _thaw(value: Any) -> Any:
	if isinstance(value, Mapping):
		return {k: _thaw(v) for k, v in value.items()}
	if isinstance(value, tuple):
		return [_thaw(v) for v in value]
	return value


# Free-form JSON payload, read-only all the way down. Dumps back to plain dicts and lists.
FrozenData = Annotated[
	dict[str, Any],
	AfterValidator(_freeze),
	PlainSerializer(_thaw),
]


# ---------------------------------------------------------------------------
# Domain records (owned by the persistence layer)
# ---------------------------------------------------------------------------

class User(_Record):
	"""A LifeOS user profile."""
	id: str
	name: str = ""
	timezone: str = "America/Los_Angeles"


class TaskPriority(str, Enum):
	"""Task priority, most urgent first."""
	P1_CRITICAL = "p1_critical"
	P2_HIGH = "p2_high"
	P3_MEDIUM = "p3_medium"
	P4_LOW = "p4_low"

	@property
	def rank(self) -> int:
		return list(TaskPriority).index(self)


class Task(_Record):
	"""A to-do item."""
	id: str
	title: str
	status: str = Field(default="todo", description="inbox, todo, in_progress, blocked, done, archived")
	priority: TaskPriority = TaskPriority.P3_MEDIUM
	due_date: Optional[date] = None
	estimated_minutes: Optional[int] = None
	project: Optional[str] = None
	completed_at: Optional[datetime] = None
	tags: tuple[str, ...] = ()

	@property
	def is_open(self) -> bool:
		return self.status not in ("done", "archived")


class CalendarEvent(_Record):
	"""A calendar event."""
	id: str
	title: str
	start_time: datetime
	end_time: datetime
	event_type: str = "other"
	all_day: bool = False
	location: Optional[str] = None
	is_flexible: bool = False


class HealthSnapshot(_Record):
	"""Daily health metrics."""
	id: str
	snapshot_date: date
	sleep_hours: Optional[float] = None
	sleep_quality: Optional[int] = None
	resting_hr: Optional[int] = None
	hrv: Optional[float] = None
	hrv_status: Optional[str] = None
	energy_level: Optional[int] = None
	stress_level: Optional[int] = None
	body_battery: Optional[int] = None
	soreness_areas: tuple[str, ...] = ()
	notes: Optional[str] = None


class Workout(_Record):
	"""A planned or completed workout."""
	id: str
	title: str
	scheduled_date: date
	workout_type: str = "run"
	status: str = Field(default="planned", description="planned, completed, skipped, partial")
	planned_duration_minutes: Optional[int] = None
	actual_duration_minutes: Optional[int] = None
	distance_miles: Optional[float] = None
	avg_heart_rate: Optional[int] = None
	coach_notes: Optional[str] = None


class Injury(_Record):
	"""An injury being tracked."""
	id: str
	body_part: str
	severity: int = Field(default=1, ge=1, le=10)
	status: str = Field(default="active", description="active, recovering, healed, chronic")
	notes: Optional[str] = None
	limitations: tuple[str, ...] = ()


class Constraint(_Record):
	"""A scheduling or lifestyle constraint."""
	id: str
	name: str
	constraint_type: str = "custom"
	applies_to_days: tuple[int, ...] = ()
	start_time: Optional[str] = None
	end_time: Optional[str] = None
	priority: int = 3
	is_active: bool = True


class WhiteboardEntryType(str, Enum):
	"""Kind of whiteboard note."""
	OBSERVATION = "observation"
	SUGGESTION = "suggestion"
	QUESTION = "question"
	ALERT = "alert"
	INSIGHT = "insight"
	PLAN = "plan"
	REFLECTION = "reflection"


class WhiteboardEntryPayload(_Record):
	"""A whiteboard note proposed by an agent."""
	entry_type: WhiteboardEntryType
	content: str
	title: Optional[str] = None
	structured_data: FrozenData = Field(default_factory=dict, validate_default=True)
	priority: int = Field(default=3, ge=1, le=5)
	requires_response: bool = False
	related_entity_type: Optional[str] = None
	related_entity_id: Optional[str] = None
	tags: tuple[str, ...] = ()


class WhiteboardEntry(_Record):
	"""A durable, user-visible note surfaced by a flow."""
	id: str = Field(default_factory=lambda: str(uuid.uuid4()))
	user_id: str
	agent_id: str
	entry_type: WhiteboardEntryType
	content: str
	title: Optional[str] = None
	visibility: str = "all"
	structured_data: FrozenData = Field(default_factory=dict, validate_default=True)
	priority: int = 3
	requires_response: bool = False
	related_entity_type: Optional[str] = None
	related_entity_id: Optional[str] = None
	context_date: date
	expires_at: Optional[datetime] = None
	tags: tuple[str, ...] = ()
	created_at: datetime = Field(default_factory=datetime.now)


# ---------------------------------------------------------------------------
# Agent contract
# ---------------------------------------------------------------------------

class AgentOutput(_Record):
	"""Structured output produced by one agent for one context."""
	agent_id: str
	content: str = ""
	structured_data: FrozenData = Field(default_factory=dict, validate_default=True)
	whiteboard_entries: tuple[WhiteboardEntryPayload, ...] = ()
	timestamp: datetime = Field(default_factory=datetime.now)
	duration_ms: Optional[float] = None


class AgentStatus(str, Enum):
	"""Outcome of one agent invocation."""
	SUCCEEDED = "succeeded"
	FAILED = "failed"
	TIMED_OUT = "timed_out"
	CANCELLED = "cancelled"


class AgentResult(_Record):
	"""Tagged outcome of one agent in a dispatch: an output or a documented failure."""
	agent_id: str
	status: AgentStatus
	output: Optional[AgentOutput] = None
	error: Optional[str] = None
	error_type: Optional[str] = None
	duration_ms: float = 0.0

	@property
	def succeeded(self) -> bool:
		return self.status == AgentStatus.SUCCEEDED


# ---------------------------------------------------------------------------
# Triggers and classification
# ---------------------------------------------------------------------------

class EventTriggerType(str, Enum):
	"""Domain events that can start a trigger flow."""
	CALENDAR_CHANGE = "calendar_change"
	HEALTH_CHECKIN = "health_checkin"
	TASK_COMPLETED = "task_completed"
	TASK_ADDED = "task_added"
	WORKOUT_COMPLETED = "workout_completed"
	WEEKLY_REVIEW = "weekly_review"
	USER_MESSAGE = "user_message"


class EventTrigger(_Record):
	"""A typed signal that something happened."""
	type: EventTriggerType
	entity_id: Optional[str] = None
	data: FrozenData = Field(default_factory=dict, validate_default=True)
	timestamp: datetime = Field(default_factory=datetime.now)


class Intent(str, Enum):
	"""Intent category of a chat message."""
	QUESTION = "question"
	COMMAND = "command"
	UPDATE = "update"
	CHAT = "chat"


class MessageClassification(_Record):
	"""Routing decision for a chat message."""
	primary_agent: str
	confidence: float = Field(ge=0.0, le=1.0)
	topics: frozenset[str] = frozenset()
	intent: Intent


# ---------------------------------------------------------------------------
# Context snapshot
# ---------------------------------------------------------------------------

class ContextScope(_Record):
	"""The entity a trigger flow is about."""
	entity_type: str
	entity_id: str
	data: Optional[FrozenData] = None


class OrchestratorContext(_Record):
	"""
	Immutable snapshot of a user's relevant state at flow start.

	Optional sources (health, workouts, injuries, constraints, whiteboard,
	completed tasks) are best-effort. When one could not be loaded its name
	is listed in `unavailable` and the field is empty or None.
	"""
	user_id: str
	date: str = Field(description="ISO date the flow is about")
	user_name: str = ""
	timezone: str = "America/Los_Angeles"
	events: tuple[CalendarEvent, ...] = ()
	tasks: tuple[Task, ...] = ()
	completed_tasks: tuple[Task, ...] = ()
	health_snapshot: Optional[HealthSnapshot] = None
	recent_workouts: tuple[Workout, ...] = ()
	upcoming_workouts: tuple[Workout, ...] = ()
	active_injuries: tuple[Injury, ...] = ()
	constraints: tuple[Constraint, ...] = ()
	whiteboard_entries: tuple[WhiteboardEntry, ...] = ()
	unavailable: tuple[str, ...] = ()

	# Flow-specific inputs
	trigger: Optional[EventTrigger] = None
	scope: Optional[ContextScope] = None
	user_message: Optional[str] = None
	classification: Optional[MessageClassification] = None
	upstream_outputs: tuple[AgentOutput, ...] = ()

	def has(self, source: str) -> bool:
		"""Whether an optional data source was loaded."""
		return source not in self.unavailable

	@property
	def todays_workout(self) -> Optional[Workout]:
		"""The planned workout scheduled on the context date, if any."""
		for workout in self.upcoming_workouts:
			if workout.scheduled_date.isoformat() == self.date:
				return workout
		return None

	def upstream(self, agent_id: str) -> Optional[AgentOutput]:
		"""Output of an agent this one depends on, if it succeeded."""
		for output in self.upstream_outputs:
			if output.agent_id == agent_id:
				return output
		return None

	def with_message(
		self,
		message: str,
		classification: Optional[MessageClassification] = None,
	) -> "OrchestratorContext":
		"""Derive a snapshot carrying a chat message. Data fields are shared."""
		return self.model_copy(update={"user_message": message, "classification": classification})

	def with_upstream(self, outputs: list[AgentOutput]) -> "OrchestratorContext":
		"""Derive a snapshot for a dependent tier. Data fields are shared."""
		return self.model_copy(update={"upstream_outputs": tuple(outputs)})


# ---------------------------------------------------------------------------
# Flow results
# ---------------------------------------------------------------------------

class FlowType(str, Enum):
	"""Kind of orchestrator run."""
	MORNING = "morning"
	EVENING = "evening"
	CHAT = "chat"
	TRIGGER = "trigger"


class FlowState(str, Enum):
	"""Lifecycle state of a single flow execution."""
	IDLE = "idle"
	BUILDING_CONTEXT = "building_context"
	CLASSIFYING = "classifying"
	DISPATCHING = "dispatching"
	AGGREGATING = "aggregating"
	COMPLETE = "complete"
	FAILED = "failed"
	CANCELLED = "cancelled"


class ScheduleItem(_Record):
	"""One slot in the daily plan."""
	time: str = Field(description="HH:MM in the user's timezone")
	type: str = Field(default="event", description="event, task, workout, break, focus")
	title: str = ""
	event: Optional[CalendarEvent] = None
	source_agent: Optional[str] = None
	notes: Optional[str] = None


class HealthStatus(_Record):
	"""Health section of the daily plan."""
	recovery_score: Optional[float] = None
	recommendations: tuple[str, ...] = ()
	alerts: tuple[str, ...] = ()


class WorkoutPlan(_Record):
	"""Training section of the daily plan."""
	workout: Optional[Workout] = None
	modifications: tuple[str, ...] = ()
	rationale: Optional[str] = None


class DailyPlan(_Record):
	"""Synthesized plan for the day produced by the morning flow."""
	date: str
	summary: str
	health_status: HealthStatus = Field(default_factory=HealthStatus)
	schedule: tuple[ScheduleItem, ...] = ()
	prioritized_tasks: tuple[Task, ...] = ()
	workout_plan: Optional[WorkoutPlan] = None
	whiteboard_highlights: tuple[WhiteboardEntry, ...] = ()
	unavailable_modules: tuple[str, ...] = ()


class Reflection(_Record):
	"""End-of-day reflection produced by the evening flow."""
	date: str
	summary: str
	insights: tuple[str, ...] = ()
	completed_tasks: tuple[Task, ...] = ()
	completed_workouts: tuple[Workout, ...] = ()
	tomorrow_focus: tuple[str, ...] = ()
	unavailable_modules: tuple[str, ...] = ()


class _FlowResult(_Record):
	flow_id: str
	agent_outputs: dict[str, AgentResult] = Field(default_factory=dict)
	whiteboard_entries: tuple[WhiteboardEntry, ...] = ()
	unavailable: tuple[str, ...] = ()
	duration_ms: float = 0.0

	@property
	def succeeded_outputs(self) -> dict[str, AgentOutput]:
		"""Outputs of the agents that succeeded, keyed by agent id."""
		return {
			agent_id: result.output
			for agent_id, result in self.agent_outputs.items()
			if result.succeeded and result.output is not None
		}


class MorningFlowResult(_FlowResult):
	"""Terminal output of the morning flow."""
	daily_plan: DailyPlan


class EveningFlowResult(_FlowResult):
	"""Terminal output of the evening flow."""
	reflection: Reflection


class ChatFlowResult(_FlowResult):
	"""Terminal output of the chat flow."""
	classification: MessageClassification
	response: Optional[AgentOutput] = None
	low_confidence: bool = False
	needs_clarification: bool = False


class TriggerFlowResult(_FlowResult):
	"""Terminal output of a trigger flow."""
	trigger: EventTrigger


class OrchestratorConfig(_Record):
	"""Per-user construction parameters of an orchestrator."""
	user_id: str
	timezone: Optional[str] = None
