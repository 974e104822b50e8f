"""
Result Aggregator - Merges agent outputs into a flow result.

Outputs are always visited in AGENT_PRIORITY order, so the merge is
deterministic and higher-priority agents win conflicting schedule slots.
Agents that failed or were not dispatched contribute nothing; their ids are
reported as unavailable so callers can render a degraded view.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Mapping, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..errors import AggregationError
from ..models import (
	AgentOutput,
	AgentResult,
	DailyPlan,
	FlowType,
	HealthStatus,
	OrchestratorContext,
	Reflection,
	ScheduleItem,
	WhiteboardEntry,
	WhiteboardEntryPayload,
	WhiteboardEntryType,
	WorkoutPlan,
)
from ..store import DataStore
from .registry import (
	HEALTH_AGENT,
	NUTRITION_AGENT,
	PLANNING_COACH,
	REFLECTION_AGENT,
	TRAINING_COACH,
	WORKLOAD_AGENT,
)

logger = logging.getLogger(__name__)

# Highest priority first. Unknown agents follow, alphabetically.
AGENT_PRIORITY: tuple[str, ...] = (
	TRAINING_COACH,
	HEALTH_AGENT,
	PLANNING_COACH,
	WORKLOAD_AGENT,
	NUTRITION_AGENT,
	REFLECTION_AGENT,
)

TOP_TASK_LIMIT = 5
HIGHLIGHT_LIMIT = 3

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def priority_order(agent_ids: Iterable[str]) -> list[str]:
	"""Sort agent ids by aggregation priority."""
	def _key(agent_id: str) -> tuple[int, str]:
		if agent_id in AGENT_PRIORITY:
			return AGENT_PRIORITY.index(agent_id), ""
		return len(AGENT_PRIORITY), agent_id
	return sorted(agent_ids, key=_key)


@dataclass
class Aggregate:
	"""What a flow hands back after aggregation."""
	result: Union[DailyPlan, Reflection, AgentOutput, None]
	whiteboard_entries: list[WhiteboardEntry] = field(default_factory=list)
	unavailable: tuple[str, ...] = ()


class ResultAggregator:
	"""Builds DailyPlan / Reflection / chat results and persists whiteboard entries."""

	def __init__(self, store: DataStore):
		self.store = store

	async def aggregate(
		self,
		flow_type: FlowType,
		context: OrchestratorContext,
		results: dict[str, AgentResult],
		*,
		primary_agent: Optional[str] = None,
	) -> Aggregate:
		"""
		Merge dispatch results for a flow.

		Args:
			flow_type: Decides the shape of the result
			context: Snapshot the agents were given
			results: Dispatch results keyed by agent id
			primary_agent: Chat flows only, the agent whose output is the response

		Raises:
			AggregationError: On inconsistent outputs or a failed whiteboard write
		"""
		self._validate(results)

		ordered = priority_order(results)
		outputs = {
			agent_id: results[agent_id].output
			for agent_id in ordered
			if results[agent_id].succeeded and results[agent_id].output is not None
		}
		failed_agents = tuple(agent_id for agent_id in ordered if agent_id not in outputs)
		unavailable = failed_agents + tuple(context.unavailable)

		entries = self._whiteboard_entries(context, outputs)

		result: Union[DailyPlan, Reflection, AgentOutput, None]
		if flow_type == FlowType.MORNING:
			result = self._daily_plan(context, outputs, unavailable)
		elif flow_type == FlowType.EVENING:
			result = self._reflection(context, outputs, unavailable)
		elif flow_type == FlowType.CHAT:
			result = outputs.get(primary_agent) if primary_agent else None
		else:
			result = None

		if entries:
			try:
				await self.store.add_whiteboard_entries(entries)
			except Exception as e:
				raise AggregationError(
					f"Failed to write {len(entries)} whiteboard entries: {e}",
					context={"user_id": context.user_id},
				) from e

		if failed_agents:
			logger.info(f"{flow_type.value} result missing modules: {list(failed_agents)}")
		return Aggregate(result=result, whiteboard_entries=entries, unavailable=unavailable)

	@staticmethod
	def _validate(results: dict[str, AgentResult]) -> None:
		for agent_id, result in results.items():
			output_agent = result.output.agent_id if result.output is not None else result.agent_id
			if result.agent_id != agent_id or output_agent != agent_id:
				raise AggregationError(
					f"Output keyed as {agent_id} was produced by {output_agent}",
					context={"key": agent_id, "agent_id": output_agent},
				)

	# ------------------------------------------------------------------
	# Whiteboard
	# ------------------------------------------------------------------

	def _whiteboard_entries(
		self,
		context: OrchestratorContext,
		outputs: dict[str, AgentOutput],
	) -> list[WhiteboardEntry]:
		scope = context.scope
		context_date = date.fromisoformat(context.date)
		entries: list[WhiteboardEntry] = []

		for agent_id, output in outputs.items():
			payloads = list(output.whiteboard_entries)
			if not payloads and scope is not None:
				payloads.append(WhiteboardEntryPayload(
					entry_type=WhiteboardEntryType.OBSERVATION,
					content=output.content or f"{agent_id} reviewed {scope.entity_type} {scope.entity_id}",
				))

			for payload in payloads:
				related_type = payload.related_entity_type
				related_id = payload.related_entity_id
				if related_id is None and scope is not None:
					related_type, related_id = scope.entity_type, scope.entity_id
				entries.append(WhiteboardEntry(
					user_id=context.user_id,
					agent_id=agent_id,
					entry_type=payload.entry_type,
					content=payload.content,
					title=payload.title,
					structured_data=dict(payload.structured_data),
					priority=payload.priority,
					requires_response=payload.requires_response,
					related_entity_type=related_type,
					related_entity_id=related_id,
					context_date=context_date,
					tags=payload.tags,
				))
		return entries

	# ------------------------------------------------------------------
	# Morning
	# ------------------------------------------------------------------

	def _daily_plan(
		self,
		context: OrchestratorContext,
		outputs: dict[str, AgentOutput],
		unavailable: tuple[str, ...],
	) -> DailyPlan:
		return DailyPlan(
			date=context.date,
			summary=self._summary(outputs) or (
				f"{len(context.events)} events and {len(context.tasks)} open tasks today."
			),
			health_status=self._health_status(outputs),
			schedule=tuple(self._schedule(context, outputs)),
			prioritized_tasks=tuple(
				sorted(
					(t for t in context.tasks if t.is_open),
					key=lambda t: t.priority.rank,
				)[:TOP_TASK_LIMIT]
			),
			workout_plan=self._workout_plan(context, outputs.get(TRAINING_COACH)),
			whiteboard_highlights=context.whiteboard_entries[:HIGHLIGHT_LIMIT],
			unavailable_modules=unavailable,
		)

	@staticmethod
	def _summary(outputs: dict[str, AgentOutput]) -> Optional[str]:
		for output in outputs.values():
			if output.content.strip():
				return output.content.strip()
		return None

	@staticmethod
	def _health_status(outputs: dict[str, AgentOutput]) -> HealthStatus:
		recommendations: list[str] = []
		alerts: list[str] = []
		for output in outputs.values():
			for payload in output.whiteboard_entries:
				if payload.entry_type == WhiteboardEntryType.SUGGESTION:
					recommendations.append(payload.content)
				elif payload.entry_type == WhiteboardEntryType.ALERT:
					alerts.append(payload.content)

		recovery_score = None
		health = outputs.get(HEALTH_AGENT)
		if health is not None:
			raw = health.structured_data.get("recoveryScore")
			if raw is not None:
				try:
					recovery_score = float(raw)
				except (TypeError, ValueError) as e:
					raise AggregationError(
						f"recoveryScore is not a number: {raw!r}",
						context={"agent_id": HEALTH_AGENT},
					) from e

		return HealthStatus(
			recovery_score=recovery_score,
			recommendations=tuple(recommendations),
			alerts=tuple(alerts),
		)

	def _schedule(self, context: OrchestratorContext, outputs: dict[str, AgentOutput]) -> list[ScheduleItem]:
		tz = self._zone(context.timezone)
		items = [
			ScheduleItem(
				time=self._local_time(event.start_time, tz) if not event.all_day else "00:00",
				type="event",
				title=event.title,
				event=event,
			)
			for event in context.events
		]

		claimed: dict[str, str] = {}
		for agent_id, output in outputs.items():
			proposed = output.structured_data.get("schedule") or []
			if not isinstance(proposed, (list, tuple)):
				raise AggregationError(
					f"{agent_id} schedule must be a list, got {type(proposed).__name__}",
					context={"agent_id": agent_id},
				)
			for raw in proposed:
				item = self._schedule_item(agent_id, raw)
				if item.time in claimed:
					logger.debug(f"Slot {item.time} held by {claimed[item.time]}, dropping {agent_id} item")
					continue
				claimed[item.time] = agent_id
				items.append(item)

		return sorted(items, key=lambda item: item.time)

	@staticmethod
	def _schedule_item(agent_id: str, raw: Any) -> ScheduleItem:
		if not isinstance(raw, Mapping) or not _TIME_PATTERN.match(str(raw.get("time", ""))):
			raise AggregationError(
				f"{agent_id} proposed an invalid schedule item: {raw!r}",
				context={"agent_id": agent_id},
			)
		return ScheduleItem(
			time=raw["time"],
			type=raw.get("type", "task"),
			title=raw.get("title", ""),
			source_agent=agent_id,
			notes=raw.get("notes"),
		)

	@staticmethod
	def _workout_plan(context: OrchestratorContext, training: Optional[AgentOutput]) -> Optional[WorkoutPlan]:
		workout = context.todays_workout
		plan = training.structured_data.get("workoutPlan") if training is not None else None
		if isinstance(plan, Mapping):
			return WorkoutPlan(
				workout=workout,
				modifications=tuple(plan.get("modifications", ())),
				rationale=plan.get("rationale"),
			)
		if workout is not None:
			return WorkoutPlan(workout=workout)
		return None

	@staticmethod
	def _zone(name: str) -> Optional[ZoneInfo]:
		try:
			return ZoneInfo(name)
		except (ZoneInfoNotFoundError, ValueError):
			logger.warning(f"Unknown timezone {name!r}, using event times as given")
			return None

	@staticmethod
	def _local_time(value: datetime, tz: Optional[ZoneInfo]) -> str:
		if tz is not None and value.tzinfo is not None:
			value = value.astimezone(tz)
		return value.strftime("%H:%M")

	# ------------------------------------------------------------------
	# Evening
	# ------------------------------------------------------------------

	def _reflection(
		self,
		context: OrchestratorContext,
		outputs: dict[str, AgentOutput],
		unavailable: tuple[str, ...],
	) -> Reflection:
		insights: list[str] = []
		focus: list[str] = []
		for output in outputs.values():
			insights.extend(str(i) for i in output.structured_data.get("insights", ()))
			insights.extend(
				p.content for p in output.whiteboard_entries
				if p.entry_type in (WhiteboardEntryType.INSIGHT, WhiteboardEntryType.REFLECTION)
			)
			for item in output.structured_data.get("tomorrowFocus", ()):
				if str(item) not in focus:
					focus.append(str(item))

		completed_workouts = tuple(
			w for w in context.recent_workouts if w.scheduled_date.isoformat() == context.date
		)
		summary = self._summary(outputs) or (
			f"Completed {len(context.completed_tasks)} tasks and {len(completed_workouts)} workouts."
		)
		return Reflection(
			date=context.date,
			summary=summary,
			insights=tuple(insights),
			completed_tasks=context.completed_tasks,
			completed_workouts=completed_workouts,
			tomorrow_focus=tuple(focus),
			unavailable_modules=unavailable,
		)
