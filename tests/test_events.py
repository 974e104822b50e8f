"""Tests for the event bus."""

import logging

import pytest

from lifeos_orchestrator.events import (
	AGENT_FAILED,
	FLOW_COMPLETE,
	FLOW_START,
	AgentFailed,
	EventBus,
	FlowCompleted,
	FlowStarted,
	attach_event_logger,
)


def _started() -> FlowStarted:
	return FlowStarted("flow-1", "morning", "user-1")


class TestEventBus:
	"""Tests for EventBus subscribe/emit."""

	@pytest.mark.asyncio
	async def test_sync_and_async_listeners(self):
		"""Both plain and coroutine listeners receive events."""
		bus = EventBus()
		received = []

		def sync_listener(event, payload):
			received.append(("sync", event))

		async def async_listener(event, payload):
			received.append(("async", event))

		bus.on(FLOW_START, sync_listener)
		bus.on(FLOW_START, async_listener)
		await bus.emit(FLOW_START, _started())

		assert received == [("sync", FLOW_START), ("async", FLOW_START)]

	@pytest.mark.asyncio
	async def test_unsubscribe(self):
		"""The callable returned by on() removes the listener."""
		bus = EventBus()
		received = []
		unsubscribe = bus.on(FLOW_START, lambda e, p: received.append(e))

		unsubscribe()
		await bus.emit(FLOW_START, _started())

		assert received == []
		assert bus.listener_count(FLOW_START) == 0

	@pytest.mark.asyncio
	async def test_wildcard_receives_everything(self):
		bus = EventBus()
		received = []
		bus.on("*", lambda e, p: received.append(e))

		await bus.emit(FLOW_START, _started())
		await bus.emit(FLOW_COMPLETE, FlowCompleted("flow-1", "morning", "user-1", duration_ms=5.0))

		assert received == [FLOW_START, FLOW_COMPLETE]

	@pytest.mark.asyncio
	async def test_listener_errors_are_isolated(self):
		"""A failing listener does not stop delivery or reach the emitter."""
		bus = EventBus()
		received = []

		def broken(event, payload):
			raise RuntimeError("listener bug")

		bus.on(FLOW_START, broken)
		bus.on(FLOW_START, lambda e, p: received.append(e))

		await bus.emit(FLOW_START, _started())

		assert received == [FLOW_START]

	def test_unknown_event_rejected(self):
		bus = EventBus()
		with pytest.raises(ValueError, match="Unknown event"):
			bus.on("flow:exploded", lambda e, p: None)


@pytest.mark.asyncio
async def test_event_logger_logs_failures_as_warning(caplog):
	"""attach_event_logger logs agent failures at WARNING."""
	bus = EventBus()
	attach_event_logger(bus, logging.getLogger("test.events"))

	with caplog.at_level(logging.INFO, logger="test.events"):
		await bus.emit(FLOW_START, _started())
		await bus.emit(
			AGENT_FAILED,
			AgentFailed(
				"flow-1",
				"morning",
				"user-1",
				agent_id="health-agent",
				error=RuntimeError("boom"),
				duration_ms=3.0,
			),
		)

	levels = [(r.levelno, r.getMessage()) for r in caplog.records]
	assert (logging.INFO, "[morning:flow-1] flow:start") in levels
	assert any(level == logging.WARNING and "health-agent: boom" in msg for level, msg in levels)
