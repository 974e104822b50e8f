"""
Agent Registry - Maps agent ids to invokable capabilities.

Every agent is treated identically: an object with an async
`invoke(context) -> AgentOutput`. The registry also records which agents
an agent depends on (for tiered dispatch) and which flows it takes part in.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional, Protocol, runtime_checkable

from ..models import AgentOutput, FlowType, OrchestratorContext

logger = logging.getLogger(__name__)

HEALTH_AGENT = "health-agent"
TRAINING_COACH = "training-coach"
PLANNING_COACH = "planning-coach"
WORKLOAD_AGENT = "workload-agent"
NUTRITION_AGENT = "nutrition-agent"
REFLECTION_AGENT = "reflection-agent"

# Always dispatched by the morning flow, registered or not
CORE_AGENTS = (HEALTH_AGENT, TRAINING_COACH)

DEFAULT_AGENT_FLOWS: dict[str, frozenset[FlowType]] = {
	HEALTH_AGENT: frozenset({FlowType.MORNING, FlowType.CHAT, FlowType.TRIGGER}),
	TRAINING_COACH: frozenset({FlowType.MORNING, FlowType.CHAT, FlowType.TRIGGER}),
	PLANNING_COACH: frozenset({FlowType.MORNING, FlowType.CHAT, FlowType.TRIGGER}),
	WORKLOAD_AGENT: frozenset({FlowType.MORNING, FlowType.TRIGGER}),
	NUTRITION_AGENT: frozenset({FlowType.CHAT}),
	REFLECTION_AGENT: frozenset({FlowType.EVENING, FlowType.TRIGGER}),
}


@runtime_checkable
class Agent(Protocol):
	"""Uniform agent capability."""

	async def invoke(self, context: OrchestratorContext) -> AgentOutput: ...


class FunctionAgent:
	"""
	Adapter exposing an async callable as an Agent.

	The callable may return an AgentOutput, or a plain string which is
	wrapped as the output content.
	"""

	def __init__(
		self,
		agent_id: str,
		fn: Callable[[OrchestratorContext], Awaitable[AgentOutput | str]],
	):
		self.agent_id = agent_id
		self._fn = fn

	async def invoke(self, context: OrchestratorContext) -> AgentOutput:
		result = await self._fn(context)
		if isinstance(result, str):
			return AgentOutput(agent_id=self.agent_id, content=result)
		return result

	def __repr__(self) -> str:
		return f"FunctionAgent({self.agent_id!r})"


@dataclass
class AgentRegistration:
	"""A registered agent and its declared relationships."""
	agent_id: str
	agent: Agent
	depends_on: tuple[str, ...] = ()
	flows: frozenset[FlowType] = field(default_factory=frozenset)


class AgentRegistry:
	"""
	Registry of agent capabilities keyed by agent id.

	Usage:
		registry = AgentRegistry()
		registry.register("health-agent", HealthAgent())
		registry.register("planning-coach", planner, depends_on=("health-agent",))

		for tier in registry.tiers(["health-agent", "planning-coach"]):
			...
	"""

	def __init__(self):
		self._agents: dict[str, AgentRegistration] = {}

	def register(
		self,
		agent_id: str,
		agent: Agent,
		depends_on: Iterable[str] = (),
		flows: Optional[Iterable[FlowType]] = None,
	) -> AgentRegistration:
		"""
		Register (or replace) an agent.

		Args:
			agent_id: Unique agent identifier
			agent: Object with an async invoke(context) method
			depends_on: Agents whose outputs this agent needs
			flows: Flow types this agent joins; defaults from DEFAULT_AGENT_FLOWS

		Raises:
			ValueError: If the dependencies would form a cycle
		"""
		if not hasattr(agent, "invoke"):
			raise TypeError(f"Agent {agent_id} has no invoke() method")

		depends_on = tuple(depends_on)
		if agent_id in depends_on:
			raise ValueError(f"Agent {agent_id} cannot depend on itself")

		if flows is None:
			flows = DEFAULT_AGENT_FLOWS.get(agent_id, frozenset({FlowType.CHAT, FlowType.TRIGGER}))

		registration = AgentRegistration(
			agent_id=agent_id,
			agent=agent,
			depends_on=depends_on,
			flows=frozenset(flows),
		)
		previous = self._agents.get(agent_id)
		self._agents[agent_id] = registration

		cycle = self._find_cycle(agent_id)
		if cycle:
			if previous is not None:
				self._agents[agent_id] = previous
			else:
				del self._agents[agent_id]
			raise ValueError(f"Dependency cycle: {' -> '.join(cycle)}")

		logger.debug(f"Registered agent {agent_id} (depends_on={list(depends_on)})")
		return registration

	def unregister(self, agent_id: str) -> bool:
		return self._agents.pop(agent_id, None) is not None

	def get(self, agent_id: str) -> Optional[Agent]:
		registration = self._agents.get(agent_id)
		return registration.agent if registration else None

	def dependencies(self, agent_id: str) -> tuple[str, ...]:
		registration = self._agents.get(agent_id)
		return registration.depends_on if registration else ()

	def __contains__(self, agent_id: str) -> bool:
		return agent_id in self._agents

	def __len__(self) -> int:
		return len(self._agents)

	@property
	def agent_ids(self) -> list[str]:
		return list(self._agents)

	def agents_for(self, flow_type: FlowType) -> list[str]:
		"""Registered agents that take part in a flow type, in registration order."""
		return [r.agent_id for r in self._agents.values() if flow_type in r.flows]

	def resolve(self, agent_ids: Iterable[str]) -> list[str]:
		"""
		Narrow a requested agent list to what should be dispatched.

		Core agents are always kept so a missing one is reported as an
		unavailable module. Optional agents that are not registered are
		dropped. Duplicates are removed, first occurrence wins.
		"""
		resolved: list[str] = []
		for agent_id in agent_ids:
			if agent_id in resolved:
				continue
			if agent_id in self._agents or agent_id in CORE_AGENTS:
				resolved.append(agent_id)
		return resolved

	def tiers(self, agent_ids: Iterable[str]) -> list[list[str]]:
		"""
		Group agents into dependency tiers.

		An agent lands in the tier after the latest tier holding one of its
		dependencies. Dependencies outside `agent_ids` are ignored. Order
		within a tier follows the input order.
		"""
		agent_ids = list(dict.fromkeys(agent_ids))
		requested = set(agent_ids)
		depth: dict[str, int] = {}

		def _depth(agent_id: str) -> int:
			if agent_id not in depth:
				deps = [d for d in self.dependencies(agent_id) if d in requested]
				depth[agent_id] = 1 + max((_depth(d) for d in deps), default=-1)
			return depth[agent_id]

		tiers: list[list[str]] = []
		for agent_id in agent_ids:
			level = _depth(agent_id)
			while len(tiers) <= level:
				tiers.append([])
			tiers[level].append(agent_id)
		return [tier for tier in tiers if tier]

	def _find_cycle(self, start: str) -> Optional[list[str]]:
		path: list[str] = []

		def _visit(agent_id: str) -> bool:
			if agent_id in path:
				path.append(agent_id)
				return True
			path.append(agent_id)
			for dep in self.dependencies(agent_id):
				if _visit(dep):
					return True
			path.pop()
			return False

		if _visit(start):
			return path[path.index(path[-1]):]
		return None
