"""
Flow Controller - The orchestrator's top-level state machine.

Each entry point runs one flow:
	idle -> building_context -> [classifying] -> dispatching -> aggregating -> complete

`failed` and `cancelled` are reachable from any non-idle state. A fatal
error (context build, classification, aggregation) emits flow:failed and
propagates to the caller; individual agent failures only make the result
partial.

Concurrent flows for the same user are not serialized here. Callers that
need ordering must await one flow before starting the next.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import Config, get_config
from ..errors import FlowCancelledError, OrchestratorError
from ..events import (
	FLOW_CANCELLED,
	FLOW_COMPLETE,
	FLOW_FAILED,
	FLOW_START,
	TRIGGER_RECEIVED,
	EventBus,
	FlowCancelled,
	FlowCompleted,
	FlowFailed,
	FlowRef,
	FlowStarted,
	Listener,
	TriggerReceived,
)
from ..logging_config import bind_flow
from ..models import (
	ChatFlowResult,
	EventTrigger,
	EventTriggerType,
	EveningFlowResult,
	FlowState,
	FlowType,
	MorningFlowResult,
	OrchestratorConfig,
	OrchestratorContext,
	TriggerFlowResult,
)
from ..store import DataStore
from .aggregator import ResultAggregator
from .classifier import TOPIC_AGENTS, KeywordClassifier, MessageClassifier, classify_message
from .context_builder import ContextBuilder
from .dispatcher import AgentDispatcher
from .registry import (
	CORE_AGENTS,
	HEALTH_AGENT,
	PLANNING_COACH,
	REFLECTION_AGENT,
	TRAINING_COACH,
	WORKLOAD_AGENT,
	Agent,
	AgentRegistration,
	AgentRegistry,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")

# trigger type -> agents interested in it, in dispatch order
TRIGGER_AGENTS: dict[EventTriggerType, tuple[str, ...]] = {
	EventTriggerType.CALENDAR_CHANGE: (PLANNING_COACH, WORKLOAD_AGENT),
	EventTriggerType.HEALTH_CHECKIN: (HEALTH_AGENT,),
	EventTriggerType.TASK_COMPLETED: (PLANNING_COACH,),
	EventTriggerType.TASK_ADDED: (PLANNING_COACH, WORKLOAD_AGENT),
	EventTriggerType.WORKOUT_COMPLETED: (TRAINING_COACH,),
	EventTriggerType.WEEKLY_REVIEW: (TRAINING_COACH, REFLECTION_AGENT),
	# Chat goes through handle_chat_message
	EventTriggerType.USER_MESSAGE: (),
}

_TERMINAL = frozenset({FlowState.COMPLETE, FlowState.FAILED, FlowState.CANCELLED})
_ABORT = frozenset({FlowState.FAILED, FlowState.CANCELLED})

ALLOWED_TRANSITIONS: dict[FlowState, frozenset[FlowState]] = {
	FlowState.IDLE: frozenset({FlowState.BUILDING_CONTEXT}),
	FlowState.BUILDING_CONTEXT: frozenset({FlowState.CLASSIFYING, FlowState.DISPATCHING}) | _ABORT,
	# A chat flow asking for clarification skips dispatching
	FlowState.CLASSIFYING: frozenset({FlowState.DISPATCHING, FlowState.AGGREGATING}) | _ABORT,
	FlowState.DISPATCHING: frozenset({FlowState.AGGREGATING}) | _ABORT,
	FlowState.AGGREGATING: frozenset({FlowState.COMPLETE}) | _ABORT,
	FlowState.COMPLETE: frozenset(),
	FlowState.FAILED: frozenset(),
	FlowState.CANCELLED: frozenset(),
}


@dataclass
class FlowRun:
	"""State of a single flow execution."""
	flow_type: FlowType
	user_id: str
	flow_id: str = field(default_factory=lambda: str(uuid.uuid4()))
	state: FlowState = FlowState.IDLE
	history: list[FlowState] = field(default_factory=lambda: [FlowState.IDLE])
	started: float = field(default_factory=time.monotonic)
	error: Optional[BaseException] = None

	@property
	def ref(self) -> FlowRef:
		return FlowRef(self.flow_id, self.flow_type.value, self.user_id)

	@property
	def is_terminal(self) -> bool:
		return self.state in _TERMINAL

	def transition(self, new_state: FlowState) -> None:
		if new_state not in ALLOWED_TRANSITIONS[self.state]:
			raise RuntimeError(
				f"Illegal flow transition {self.state.value} -> {new_state.value} "
				f"({self.flow_type.value} flow {self.flow_id})"
			)
		logger.debug(f"[{self.flow_type.value}:{self.flow_id}] {self.state.value} -> {new_state.value}")
		self.state = new_state
		self.history.append(new_state)

	def elapsed_ms(self) -> float:
		return (time.monotonic() - self.started) * 1000


def _check_cancel(cancel: Optional[asyncio.Event]) -> None:
	if cancel is not None and cancel.is_set():
		raise FlowCancelledError("Flow cancelled")


class Orchestrator:
	"""
	Entry point for running LifeOS flows for one user.

	Usage:
		orchestrator = Orchestrator(OrchestratorConfig(user_id="user-1"), store)
		orchestrator.register_agent("health-agent", HealthAgent())
		orchestrator.on("agent:failed", notify_ui)

		result = await orchestrator.run_morning_flow()
		print(result.daily_plan.summary)
	"""

	def __init__(
		self,
		config: OrchestratorConfig,
		store: DataStore,
		registry: Optional[AgentRegistry] = None,
		classifier: Optional[MessageClassifier] = None,
		bus: Optional[EventBus] = None,
		settings: Optional[Config] = None,
	):
		self.config = config
		self.settings = settings or get_config()
		self.store = store
		self.registry = registry if registry is not None else AgentRegistry()
		self.bus = bus if bus is not None else EventBus()
		self.classifier = classifier if classifier is not None else KeywordClassifier()
		self.timezone = config.timezone or self.settings.default_timezone

		self.context_builder = ContextBuilder(store, whiteboard_limit=self.settings.whiteboard_context_limit)
		self.dispatcher = AgentDispatcher(
			self.registry,
			self.bus,
			agent_timeout=self.settings.agent_timeout,
			flow_timeout=self.settings.flow_timeout,
		)
		self.aggregator = ResultAggregator(store)
		self.last_run: Optional[FlowRun] = None

	@property
	def user_id(self) -> str:
		return self.config.user_id

	def register_agent(self, agent_id: str, agent: Agent, **kwargs) -> AgentRegistration:
		"""Register an agent. See AgentRegistry.register."""
		return self.registry.register(agent_id, agent, **kwargs)

	def on(self, event: str, listener: Listener) -> Callable[[], None]:
		"""Subscribe to orchestrator events. Returns an unsubscribe callable."""
		return self.bus.on(event, listener)

	def today(self) -> str:
		"""Today's ISO date in the user's timezone."""
		try:
			return datetime.now(ZoneInfo(self.timezone)).date().isoformat()
		except (ZoneInfoNotFoundError, ValueError):
			logger.warning(f"Unknown timezone {self.timezone!r}, using local date")
			return datetime.now().date().isoformat()

	async def build_context(self, date: Optional[str] = None) -> OrchestratorContext:
		"""Build a context snapshot outside of any flow."""
		return await self.context_builder.build(self.user_id, date or self.today(), self.timezone)

	# ------------------------------------------------------------------
	# Entry points
	# ------------------------------------------------------------------

	async def run_morning_flow(
		self,
		date: Optional[str] = None,
		cancel: Optional[asyncio.Event] = None,
	) -> MorningFlowResult:
		"""
		Build the day's plan.

		Dispatches the core agents (health, training) plus every registered
		agent with the morning role, then merges their outputs into a DailyPlan.
		"""
		day = date or self.today()

		async def steps(run: FlowRun) -> MorningFlowResult:
			run.transition(FlowState.BUILDING_CONTEXT)
			context = await self.context_builder.build(self.user_id, day, self.timezone)
			_check_cancel(cancel)

			run.transition(FlowState.DISPATCHING)
			agent_ids = self.registry.resolve([*CORE_AGENTS, *self.registry.agents_for(FlowType.MORNING)])
			results = await self.dispatcher.dispatch(agent_ids, context, flow=run.ref, cancel=cancel)
			duration_ms = run.elapsed_ms()
			_check_cancel(cancel)

			run.transition(FlowState.AGGREGATING)
			aggregate = await self.aggregator.aggregate(FlowType.MORNING, context, results)
			return MorningFlowResult(
				flow_id=run.flow_id,
				daily_plan=aggregate.result,
				agent_outputs=results,
				whiteboard_entries=tuple(aggregate.whiteboard_entries),
				unavailable=aggregate.unavailable,
				duration_ms=duration_ms,
			)

		return await self._execute(FlowType.MORNING, steps)

	async def run_evening_flow(
		self,
		date: Optional[str] = None,
		cancel: Optional[asyncio.Event] = None,
	) -> EveningFlowResult:
		"""Reflect on the day with the agents that have the evening role."""
		day = date or self.today()

		async def steps(run: FlowRun) -> EveningFlowResult:
			run.transition(FlowState.BUILDING_CONTEXT)
			context = await self.context_builder.build(
				self.user_id, day, self.timezone, include_activity=True
			)
			_check_cancel(cancel)

			run.transition(FlowState.DISPATCHING)
			agent_ids = self.registry.resolve(self.registry.agents_for(FlowType.EVENING))
			results = await self.dispatcher.dispatch(agent_ids, context, flow=run.ref, cancel=cancel)
			duration_ms = run.elapsed_ms()
			_check_cancel(cancel)

			run.transition(FlowState.AGGREGATING)
			aggregate = await self.aggregator.aggregate(FlowType.EVENING, context, results)
			return EveningFlowResult(
				flow_id=run.flow_id,
				reflection=aggregate.result,
				agent_outputs=results,
				whiteboard_entries=tuple(aggregate.whiteboard_entries),
				unavailable=aggregate.unavailable,
				duration_ms=duration_ms,
			)

		return await self._execute(FlowType.EVENING, steps)

	async def handle_chat_message(
		self,
		text: str,
		date: Optional[str] = None,
		cancel: Optional[asyncio.Event] = None,
	) -> ChatFlowResult:
		"""
		Route a chat message to the agent best suited to answer it.

		Below the classification threshold the configured low-confidence
		policy applies: "dispatch" still uses the primary agent and flags
		the result, "fallback" uses the fallback agent, and "clarify"
		dispatches nothing and asks for clarification.
		"""
		day = date or self.today()
		settings = self.settings

		async def steps(run: FlowRun) -> ChatFlowResult:
			run.transition(FlowState.BUILDING_CONTEXT)
			context = await self.context_builder.build(self.user_id, day, self.timezone)
			_check_cancel(cancel)

			run.transition(FlowState.CLASSIFYING)
			classification = await classify_message(self.classifier, text, context)
			context = context.with_message(text, classification)
			low_confidence = classification.confidence < settings.classification_threshold
			_check_cancel(cancel)

			if low_confidence and settings.low_confidence_policy == "clarify":
				logger.info(
					f"Low confidence ({classification.confidence:.2f}) for chat message, asking for clarification"
				)
				run.transition(FlowState.AGGREGATING)
				aggregate = await self.aggregator.aggregate(FlowType.CHAT, context, {})
				return ChatFlowResult(
					flow_id=run.flow_id,
					classification=classification,
					unavailable=aggregate.unavailable,
					low_confidence=True,
					needs_clarification=True,
					duration_ms=run.elapsed_ms(),
				)

			primary = classification.primary_agent
			if low_confidence and settings.low_confidence_policy == "fallback":
				primary = settings.fallback_agent

			run.transition(FlowState.DISPATCHING)
			agent_ids = [primary, *self._topic_agents(classification.topics, exclude=primary)]
			results = await self.dispatcher.dispatch(agent_ids, context, flow=run.ref, cancel=cancel)
			duration_ms = run.elapsed_ms()
			_check_cancel(cancel)

			run.transition(FlowState.AGGREGATING)
			aggregate = await self.aggregator.aggregate(
				FlowType.CHAT, context, results, primary_agent=primary
			)
			return ChatFlowResult(
				flow_id=run.flow_id,
				classification=classification,
				response=aggregate.result,
				agent_outputs=results,
				whiteboard_entries=tuple(aggregate.whiteboard_entries),
				unavailable=aggregate.unavailable,
				low_confidence=low_confidence,
				duration_ms=duration_ms,
			)

		return await self._execute(FlowType.CHAT, steps)

	async def handle_trigger(
		self,
		trigger: EventTrigger,
		date: Optional[str] = None,
		cancel: Optional[asyncio.Event] = None,
	) -> TriggerFlowResult:
		"""
		React to a domain event.

		trigger:received is emitted before the flow starts. The agents come
		from TRIGGER_AGENTS and see a context scoped to the trigger's entity.
		"""
		day = date or self.today()

		async def steps(run: FlowRun) -> TriggerFlowResult:
			run.transition(FlowState.BUILDING_CONTEXT)
			context = await self.context_builder.build(
				self.user_id, day, self.timezone, trigger=trigger
			)
			_check_cancel(cancel)

			run.transition(FlowState.DISPATCHING)
			agent_ids = self.registry.resolve(TRIGGER_AGENTS.get(trigger.type, ()))
			results = await self.dispatcher.dispatch(agent_ids, context, flow=run.ref, cancel=cancel)
			duration_ms = run.elapsed_ms()
			_check_cancel(cancel)

			run.transition(FlowState.AGGREGATING)
			aggregate = await self.aggregator.aggregate(FlowType.TRIGGER, context, results)
			return TriggerFlowResult(
				flow_id=run.flow_id,
				trigger=trigger,
				agent_outputs=results,
				whiteboard_entries=tuple(aggregate.whiteboard_entries),
				unavailable=aggregate.unavailable,
				duration_ms=duration_ms,
			)

		run = FlowRun(FlowType.TRIGGER, self.user_id)
		await self.bus.emit(TRIGGER_RECEIVED, TriggerReceived(*self._ref_fields(run), trigger=trigger))
		return await self._execute(FlowType.TRIGGER, steps, run=run)

	# ------------------------------------------------------------------
	# Flow lifecycle
	# ------------------------------------------------------------------

	async def _execute(
		self,
		flow_type: FlowType,
		steps: Callable[[FlowRun], Awaitable[R]],
		run: Optional[FlowRun] = None,
	) -> R:
		run = run or FlowRun(flow_type, self.user_id)
		self.last_run = run
		with bind_flow(flow_type.value, run.flow_id):
			return await self._run_steps(run, steps)

	async def _run_steps(self, run: FlowRun, steps: Callable[[FlowRun], Awaitable[R]]) -> R:
		flow_type = run.flow_type
		logger.info(f"Starting {flow_type.value} flow {run.flow_id} for {self.user_id}")
		await self.bus.emit(FLOW_START, FlowStarted(*self._ref_fields(run)))

		try:
			result = await steps(run)
		except FlowCancelledError as e:
			await self._cancel(run, e)
			raise
		except asyncio.CancelledError as e:
			await self._cancel(run, e)
			raise
		except Exception as e:
			await self._fail(run, e)
			raise

		run.transition(FlowState.COMPLETE)
		logger.info(
			f"{flow_type.value} flow {run.flow_id} complete in {result.duration_ms:.0f}ms"
			+ (f", unavailable: {list(result.unavailable)}" if result.unavailable else "")
		)
		await self.bus.emit(
			FLOW_COMPLETE,
			FlowCompleted(
				*self._ref_fields(run),
				duration_ms=result.duration_ms,
				unavailable=result.unavailable,
			),
		)
		return result

	async def _fail(self, run: FlowRun, error: Exception) -> None:
		stage = run.state.value
		if isinstance(error, OrchestratorError):
			error.flow_type = run.flow_type.value
			error.stage = stage
		run.error = error
		if not run.is_terminal:
			run.transition(FlowState.FAILED)
		logger.error(f"{run.flow_type.value} flow {run.flow_id} failed at {stage}: {error}")
		await self.bus.emit(FLOW_FAILED, FlowFailed(*self._ref_fields(run), stage=stage, error=error))

	async def _cancel(self, run: FlowRun, error: BaseException) -> None:
		stage = run.state.value
		if isinstance(error, OrchestratorError):
			error.flow_type = run.flow_type.value
			error.stage = stage
		run.error = error
		if not run.is_terminal:
			run.transition(FlowState.CANCELLED)
		logger.warning(f"{run.flow_type.value} flow {run.flow_id} cancelled at {stage}")
		await self.bus.emit(FLOW_CANCELLED, FlowCancelled(*self._ref_fields(run), stage=stage))

	@staticmethod
	def _ref_fields(run: FlowRun) -> tuple[str, str, str]:
		ref = run.ref
		return ref.flow_id, ref.flow_type, ref.user_id

	def _topic_agents(self, topics: Iterable[str], exclude: str) -> list[str]:
		"""Registered chat agents implied by the classification topics."""
		chat_agents = set(self.registry.agents_for(FlowType.CHAT))
		agent_ids: list[str] = []
		for topic in sorted(topics):
			for agent_id in TOPIC_AGENTS.get(topic, ()):
				if agent_id != exclude and agent_id in chat_agents and agent_id not in agent_ids:
					agent_ids.append(agent_id)
		return agent_ids
