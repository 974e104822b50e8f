"""
Event Bus - Typed publish/subscribe channel for flow progress.

The orchestrator publishes events here instead of calling observers
directly. Subscribers (UI bridges, logging, run history) attach and detach
independently; the orchestrator never knows how many there are.

Listener failures are logged and swallowed so an observer can never break
a flow.
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from .models import AgentOutput, EventTrigger

logger = logging.getLogger(__name__)

FLOW_START = "flow:start"
FLOW_COMPLETE = "flow:complete"
FLOW_FAILED = "flow:failed"
FLOW_CANCELLED = "flow:cancelled"
AGENT_DISPATCHED = "agent:dispatched"
AGENT_COMPLETED = "agent:completed"
AGENT_FAILED = "agent:failed"
TRIGGER_RECEIVED = "trigger:received"

EVENT_NAMES = (
	FLOW_START,
	FLOW_COMPLETE,
	FLOW_FAILED,
	FLOW_CANCELLED,
	AGENT_DISPATCHED,
	AGENT_COMPLETED,
	AGENT_FAILED,
	TRIGGER_RECEIVED,
)
TERMINAL_EVENTS = (FLOW_COMPLETE, FLOW_FAILED, FLOW_CANCELLED)
WILDCARD = "*"


@dataclass(frozen=True)
class FlowRef:
	"""Identifies the flow an event belongs to."""
	flow_id: str
	flow_type: str
	user_id: str


@dataclass
class FlowEvent:
	"""Fields shared by every event payload."""
	flow_id: str
	flow_type: str
	user_id: str
	timestamp: datetime = field(default_factory=datetime.now, kw_only=True)


@dataclass
class FlowStarted(FlowEvent):
	pass


@dataclass
class FlowCompleted(FlowEvent):
	duration_ms: float
	unavailable: tuple[str, ...] = ()


@dataclass
class FlowFailed(FlowEvent):
	stage: str
	error: Exception


@dataclass
class FlowCancelled(FlowEvent):
	stage: str


@dataclass
class AgentDispatched(FlowEvent):
	agent_id: str


@dataclass
class AgentCompleted(FlowEvent):
	agent_id: str
	output: AgentOutput
	duration_ms: float


@dataclass
class AgentFailed(FlowEvent):
	agent_id: str
	error: Exception
	duration_ms: float
	timed_out: bool = False


@dataclass
class TriggerReceived(FlowEvent):
	trigger: EventTrigger


Listener = Callable[[str, Any], Union[None, Awaitable[None]]]


class EventBus:
	"""
	Publish/subscribe channel keyed by event name.

	Listeners are called as `listener(event_name, payload)` and may be plain
	functions or coroutines. Subscribing to "*" receives every event.
	"""

	def __init__(self):
		self._listeners: dict[str, list[Listener]] = {}

	def on(self, event: str, listener: Listener) -> Callable[[], None]:
		"""
		Subscribe a listener.

		Returns:
			A callable that removes the subscription
		"""
		if event != WILDCARD and event not in EVENT_NAMES:
			raise ValueError(f"Unknown event: {event}")
		self._listeners.setdefault(event, []).append(listener)
		return lambda: self.off(event, listener)

	def off(self, event: str, listener: Listener) -> bool:
		"""Unsubscribe a listener. Returns False if it was not subscribed."""
		listeners = self._listeners.get(event, [])
		if listener in listeners:
			listeners.remove(listener)
			return True
		return False

	def listener_count(self, event: Optional[str] = None) -> int:
		if event is None:
			return sum(len(v) for v in self._listeners.values())
		return len(self._listeners.get(event, []))

	async def emit(self, event: str, payload: FlowEvent) -> None:
		"""Deliver an event to its listeners, then to wildcard listeners."""
		listeners = [*self._listeners.get(event, []), *self._listeners.get(WILDCARD, [])]
		for listener in listeners:
			try:
				result = listener(event, payload)
				if inspect.isawaitable(result):
					await result
			except Exception as e:
				logger.warning(f"Listener for {event} failed: {e}")


def attach_event_logger(bus: EventBus, log: Optional[logging.Logger] = None) -> Callable[[], None]:
	"""Log every bus event. Failures and cancellations log at WARNING."""
	log = log or logging.getLogger("lifeos_orchestrator.events")

	def _log_event(event: str, payload: FlowEvent) -> None:
		if isinstance(payload, AgentFailed):
			log.warning(
				f"[{payload.flow_type}:{payload.flow_id}] {event} {payload.agent_id}: {payload.error}"
			)
		elif isinstance(payload, FlowFailed):
			log.warning(
				f"[{payload.flow_type}:{payload.flow_id}] {event} at {payload.stage}: {payload.error}"
			)
		elif isinstance(payload, FlowCancelled):
			log.warning(f"[{payload.flow_type}:{payload.flow_id}] {event} at {payload.stage}")
		elif isinstance(payload, FlowCompleted):
			log.info(
				f"[{payload.flow_type}:{payload.flow_id}] {event} in {payload.duration_ms:.0f}ms"
			)
		elif isinstance(payload, (AgentDispatched, AgentCompleted)):
			log.info(f"[{payload.flow_type}:{payload.flow_id}] {event} {payload.agent_id}")
		else:
			log.info(f"[{payload.flow_type}:{payload.flow_id}] {event}")

	return bus.on(WILDCARD, _log_event)
