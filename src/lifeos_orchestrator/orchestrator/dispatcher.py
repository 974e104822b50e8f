"""
Agent Dispatcher - Fan-out/fan-in invocation of agents for one flow.

Agents in a dependency tier run concurrently as independent tasks joined
at a barrier; tiers run one after another, later tiers seeing the outputs
of earlier ones. Each agent's outcome is captured as an AgentResult, so a
failing or slow agent never aborts the dispatch of the others.
"""

import asyncio
import logging
import time
from typing import Iterable, Optional

from ..errors import (
	AgentInvocationError,
	AgentNotFoundError,
	AgentTimeoutError,
	FlowCancelledError,
)
from ..events import (
	AGENT_COMPLETED,
	AGENT_DISPATCHED,
	AGENT_FAILED,
	AgentCompleted,
	AgentDispatched,
	AgentFailed,
	EventBus,
	FlowRef,
)
from ..models import AgentOutput, AgentResult, AgentStatus, OrchestratorContext
from .registry import AgentRegistry

logger = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> float:
	return (time.monotonic() - started) * 1000


class AgentDispatcher:
	"""
	Invokes agents with a shared context, isolating failures and timeouts.

	Args:
		registry: Where agent ids are resolved to capabilities
		bus: Receives agent:dispatched / agent:completed / agent:failed
		agent_timeout: Seconds each agent gets before it is timed out
		flow_timeout: Ceiling for the whole dispatch; defaults to
			agent_timeout times the number of agents
	"""

	def __init__(
		self,
		registry: AgentRegistry,
		bus: EventBus,
		agent_timeout: float = 30.0,
		flow_timeout: Optional[float] = None,
	):
		self.registry = registry
		self.bus = bus
		self.agent_timeout = agent_timeout
		self.flow_timeout = flow_timeout

	def ceiling(self, agent_count: int) -> float:
		"""Dispatch-wide timeout for a number of agents."""
		if self.flow_timeout is not None:
			return self.flow_timeout
		return self.agent_timeout * max(agent_count, 1)

	async def dispatch(
		self,
		agent_ids: Iterable[str],
		context: OrchestratorContext,
		*,
		flow: FlowRef,
		cancel: Optional[asyncio.Event] = None,
	) -> dict[str, AgentResult]:
		"""
		Dispatch agents and collect one result per agent.

		Returns:
			Mapping agent_id -> AgentResult, in dispatch order, with exactly
			one entry per distinct requested agent

		Raises:
			FlowCancelledError: If `cancel` is set before all agents resolve
		"""
		agent_ids = list(dict.fromkeys(agent_ids))
		results: dict[str, AgentResult] = {}
		if not agent_ids:
			return results

		loop = asyncio.get_running_loop()
		ceiling = self.ceiling(len(agent_ids))
		deadline = loop.time() + ceiling
		upstream: list[AgentOutput] = []

		for tier in self.registry.tiers(agent_ids):
			if cancel is not None and cancel.is_set():
				raise FlowCancelledError("Flow cancelled before dispatch", context={"agents": tier})

			tier_context = context.with_upstream(upstream) if upstream else context
			tasks: dict[str, asyncio.Task] = {}
			for agent_id in tier:
				await self.bus.emit(
					AGENT_DISPATCHED,
					AgentDispatched(flow.flow_id, flow.flow_type, flow.user_id, agent_id=agent_id),
				)
				tasks[agent_id] = asyncio.create_task(
					self._invoke(agent_id, tier_context, flow),
					name=f"agent:{agent_id}",
				)

			tier_results = await self._join(tasks, deadline, ceiling, flow, cancel)
			results.update(tier_results)
			upstream.extend(r.output for r in tier_results.values() if r.succeeded and r.output)

		return {agent_id: results[agent_id] for agent_id in agent_ids}

	async def _join(
		self,
		tasks: dict[str, asyncio.Task],
		deadline: float,
		ceiling: float,
		flow: FlowRef,
		cancel: Optional[asyncio.Event],
	) -> dict[str, AgentResult]:
		"""Wait for a tier's tasks until they resolve, the deadline passes, or cancel is set."""
		loop = asyncio.get_running_loop()
		started = time.monotonic()
		pending = set(tasks.values())
		waiter = asyncio.create_task(cancel.wait()) if cancel is not None else None

		try:
			while pending:
				timeout = deadline - loop.time()
				if timeout <= 0:
					break
				watched = pending | {waiter} if waiter else pending
				done, _ = await asyncio.wait(watched, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
				pending -= done
				if waiter is not None and waiter in done:
					cancelled = [agent_id for agent_id, task in tasks.items() if task in pending]
					reason = FlowCancelledError("Flow cancelled during dispatch", context={"agents": cancelled})
					await self._abort(tasks, pending, flow, {a: reason for a in cancelled}, started)
					raise reason
		except asyncio.CancelledError:
			cancelled = [agent_id for agent_id, task in tasks.items() if task in pending]
			reason = FlowCancelledError("Flow task cancelled during dispatch", context={"agents": cancelled})
			await self._abort(tasks, pending, flow, {a: reason for a in cancelled}, started)
			raise
		finally:
			if waiter is not None:
				waiter.cancel()

		results: dict[str, AgentResult] = {}
		timeouts: dict[str, AgentTimeoutError] = {}
		for agent_id, task in tasks.items():
			if task not in pending:
				results[agent_id] = task.result()
				continue
			# Flow ceiling reached before this agent resolved
			error = AgentTimeoutError(agent_id, ceiling)
			timeouts[agent_id] = error
			results[agent_id] = AgentResult(
				agent_id=agent_id,
				status=AgentStatus.TIMED_OUT,
				error=str(error),
				error_type=type(error).__name__,
				duration_ms=_elapsed_ms(started),
			)
		if pending:
			logger.warning(f"Flow ceiling of {ceiling:g}s reached, cancelling {sorted(timeouts)}")
			await self._abort(tasks, pending, flow, timeouts, started)
		return results

	async def _abort(
		self,
		tasks: dict[str, asyncio.Task],
		pending: set[asyncio.Task],
		flow: FlowRef,
		errors: dict[str, Exception],
		started: float,
	) -> None:
		"""Cancel unresolved agent tasks and report each as failed."""
		for task in pending:
			task.cancel()
		await asyncio.gather(*pending, return_exceptions=True)

		for agent_id, error in errors.items():
			await self.bus.emit(
				AGENT_FAILED,
				AgentFailed(
					flow.flow_id,
					flow.flow_type,
					flow.user_id,
					agent_id=agent_id,
					error=error,
					duration_ms=_elapsed_ms(started),
					timed_out=isinstance(error, AgentTimeoutError),
				),
			)

	async def _invoke(self, agent_id: str, context: OrchestratorContext, flow: FlowRef) -> AgentResult:
		"""Run one agent and capture its outcome. Only CancelledError escapes."""
		started = time.monotonic()
		agent = self.registry.get(agent_id)

		try:
			if agent is None:
				raise AgentNotFoundError(agent_id)
			output = await asyncio.wait_for(agent.invoke(context), timeout=self.agent_timeout)
			if not isinstance(output, AgentOutput):
				raise AgentInvocationError(
					f"Agent {agent_id} returned {type(output).__name__}, expected AgentOutput",
					agent_id,
				)
		except asyncio.TimeoutError:
			error = AgentTimeoutError(agent_id, self.agent_timeout)
			return await self._failed(agent_id, error, AgentStatus.TIMED_OUT, started, flow)
		except AgentInvocationError as e:
			return await self._failed(agent_id, e, AgentStatus.FAILED, started, flow)
		except Exception as e:
			error = AgentInvocationError(f"Agent {agent_id} failed: {e}", agent_id)
			error.__cause__ = e
			return await self._failed(agent_id, error, AgentStatus.FAILED, started, flow)

		duration_ms = _elapsed_ms(started)
		if output.duration_ms is None:
			output = output.model_copy(update={"duration_ms": duration_ms})

		logger.info(f"Agent {agent_id} completed in {duration_ms:.0f}ms")
		await self.bus.emit(
			AGENT_COMPLETED,
			AgentCompleted(
				flow.flow_id,
				flow.flow_type,
				flow.user_id,
				agent_id=agent_id,
				output=output,
				duration_ms=duration_ms,
			),
		)
		return AgentResult(
			agent_id=agent_id,
			status=AgentStatus.SUCCEEDED,
			output=output,
			duration_ms=duration_ms,
		)

	async def _failed(
		self,
		agent_id: str,
		error: AgentInvocationError,
		status: AgentStatus,
		started: float,
		flow: FlowRef,
	) -> AgentResult:
		duration_ms = _elapsed_ms(started)
		logger.warning(f"Agent {agent_id} {status.value}: {error}")
		await self.bus.emit(
			AGENT_FAILED,
			AgentFailed(
				flow.flow_id,
				flow.flow_type,
				flow.user_id,
				agent_id=agent_id,
				error=error,
				duration_ms=duration_ms,
				timed_out=status == AgentStatus.TIMED_OUT,
			),
		)
		return AgentResult(
			agent_id=agent_id,
			status=status,
			error=str(error),
			error_type=type(error).__name__,
			duration_ms=duration_ms,
		)
