"""
Message Classifier - Routes free-form chat input to a primary agent.

The flow controller only depends on the `MessageClassifier` output shape.
`KeywordClassifier` is the default, deterministic implementation: explicit
phrases route with high confidence, otherwise topic keywords are scored
per agent and the margin between the top two agents sets the confidence.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from ..errors import ClassificationError
from ..models import Intent, MessageClassification, OrchestratorContext
from .registry import (
	HEALTH_AGENT,
	NUTRITION_AGENT,
	PLANNING_COACH,
	TRAINING_COACH,
	WORKLOAD_AGENT,
)

logger = logging.getLogger(__name__)

QUICK_ROUTE_CONFIDENCE = 0.95
GREETING_CONFIDENCE = 0.9
MAX_KEYWORD_CONFIDENCE = 0.9
NO_MATCH_CONFIDENCE = 0.3


@dataclass(frozen=True)
class Topic:
	"""A topic tag, the agent that owns it, and the words that signal it."""
	name: str
	agent_id: str
	keywords: tuple[str, ...]


TOPICS: tuple[Topic, ...] = (
	Topic("sleep", HEALTH_AGENT, ("sleep", "slept", "sleeping", "insomnia", "nap")),
	Topic("recovery", HEALTH_AGENT, (
		"recovery", "recovered", "hrv", "heart rate", "resting", "body battery",
		"fatigue", "tired", "energy", "stress", "stressed", "rest day",
	)),
	Topic("injury", HEALTH_AGENT, ("injury", "injured", "sore", "soreness", "pain", "sick", "hurts")),
	Topic("biomarkers", HEALTH_AGENT, (
		"biomarker", "biomarkers", "blood", "lab", "vitamin", "iron", "ferritin", "inflammation",
	)),
	Topic("running", TRAINING_COACH, (
		"run", "runs", "running", "ran", "pace", "mile", "miles", "marathon", "tempo",
		"interval", "intervals", "long run", "race", "mileage",
	)),
	Topic("workout", TRAINING_COACH, ("workout", "workouts", "training", "strength", "gym", "lift")),
	Topic("nutrition", NUTRITION_AGENT, (
		"eat", "ate", "eating", "meal", "meals", "food", "protein", "calories", "carbs",
		"hydration", "nutrition", "diet",
	)),
	Topic("schedule", PLANNING_COACH, (
		"schedule", "calendar", "meeting", "meetings", "task", "tasks", "todo", "priorities",
		"prioritize", "appointment",
	)),
	Topic("workload", WORKLOAD_AGENT, ("busy", "overwhelmed", "deadline", "deadlines", "workload")),
)

# topic -> agents a chat message on that topic also involves
TOPIC_AGENTS: dict[str, tuple[str, ...]] = {topic.name: (topic.agent_id,) for topic in TOPICS}

# Checked in order; first phrase hit wins
QUICK_ROUTES: tuple[tuple[str, str, str], ...] = (
	("biomarker", HEALTH_AGENT, "biomarkers"),
	("blood work", HEALTH_AGENT, "biomarkers"),
	("lab result", HEALTH_AGENT, "biomarkers"),
	("ferritin", HEALTH_AGENT, "biomarkers"),
	("vitamin d", HEALTH_AGENT, "biomarkers"),
	("inflammation", HEALTH_AGENT, "biomarkers"),
	("today's run", TRAINING_COACH, "running"),
	("tomorrow's run", TRAINING_COACH, "running"),
	("my workout", TRAINING_COACH, "workout"),
	("training plan", TRAINING_COACH, "workout"),
	("marathon pace", TRAINING_COACH, "running"),
)

GREETINGS = ("hi", "hello", "hey", "good morning", "good evening")

# Tie-break order when two agents score the same
_AGENT_TIE_ORDER = (TRAINING_COACH, HEALTH_AGENT, PLANNING_COACH, NUTRITION_AGENT, WORKLOAD_AGENT)

_QUESTION_WORDS = frozenset({
	"what", "how", "why", "when", "where", "who", "which", "whats", "what's",
	"should", "can", "could", "is", "are", "do", "does", "will", "would", "am",
})
_COMMAND_VERBS = frozenset({
	"add", "schedule", "reschedule", "move", "cancel", "create", "remind", "log",
	"plan", "set", "delete", "remove", "mark", "show", "give", "make", "book", "skip",
})
_UPDATE_PATTERN = re.compile(
	r"\b(i|i've|i'm|just)\s+(just\s+)?(did|ran|slept|feel|felt|finished|completed|ate|had|"
	r"walked|skipped|missed|am|was|got)\b"
	r"|\b(finished|completed|done with)\b"
)
_WORD_PATTERN = re.compile(r"[a-z']+")


def _keyword_pattern(keyword: str) -> re.Pattern:
	return re.compile(rf"\b{re.escape(keyword)}\b")


_TOPIC_PATTERNS: dict[str, tuple[re.Pattern, ...]] = {
	topic.name: tuple(_keyword_pattern(k) for k in topic.keywords) for topic in TOPICS
}


@runtime_checkable
class MessageClassifier(Protocol):
	"""Classification capability used by the chat flow."""

	async def classify(self, message: str, context: OrchestratorContext) -> MessageClassification: ...


def detect_intent(message: str) -> Intent:
	"""Detect intent with question > command > update > chat precedence."""
	lower = message.lower().strip()
	words = _WORD_PATTERN.findall(lower)
	if words and words[0] == "please":
		words = words[1:]

	if lower.endswith("?") or (words and words[0] in _QUESTION_WORDS):
		return Intent.QUESTION
	if words and words[0] in _COMMAND_VERBS:
		return Intent.COMMAND
	if _UPDATE_PATTERN.search(lower):
		return Intent.UPDATE
	return Intent.CHAT


class KeywordClassifier:
	"""
	Deterministic keyword-based classifier.

	Args:
		default_agent: Agent used for greetings and messages with no
			recognizable topic
	"""

	def __init__(self, default_agent: str = TRAINING_COACH):
		self.default_agent = default_agent

	async def classify(self, message: str, context: OrchestratorContext) -> MessageClassification:
		lower = message.lower().strip()
		intent = detect_intent(message)

		quick = self._quick_route(lower)
		if quick:
			agent_id, topic, confidence = quick
			return MessageClassification(
				primary_agent=agent_id,
				confidence=confidence,
				topics=frozenset({topic}) if topic else frozenset(),
				intent=intent,
			)

		scores: dict[str, int] = {}
		topics: set[str] = set()
		for topic in TOPICS:
			hits = sum(1 for pattern in _TOPIC_PATTERNS[topic.name] if pattern.search(lower))
			if hits:
				topics.add(topic.name)
				scores[topic.agent_id] = scores.get(topic.agent_id, 0) + hits

		if self._mentions_recent_workout(lower, context):
			topics.add("workout")
			scores[TRAINING_COACH] = scores.get(TRAINING_COACH, 0) + 1

		if not scores:
			return MessageClassification(
				primary_agent=self.default_agent,
				confidence=NO_MATCH_CONFIDENCE,
				topics=frozenset(),
				intent=intent,
			)

		ranked = sorted(scores.items(), key=lambda item: (-item[1], self._tie_rank(item[0])))
		top_agent, top_score = ranked[0]
		runner_up = ranked[1][1] if len(ranked) > 1 else 0
		confidence = min(MAX_KEYWORD_CONFIDENCE, 0.45 + 0.15 * (top_score - runner_up))

		logger.debug(f"Classified message -> {top_agent} ({confidence:.2f}), scores={scores}")
		return MessageClassification(
			primary_agent=top_agent,
			confidence=round(confidence, 2),
			topics=frozenset(topics),
			intent=intent,
		)

	def _quick_route(self, lower: str) -> Optional[tuple[str, Optional[str], float]]:
		for phrase, agent_id, topic in QUICK_ROUTES:
			if phrase in lower:
				return agent_id, topic, QUICK_ROUTE_CONFIDENCE
		bare = lower.rstrip("!.? ")
		for greeting in GREETINGS:
			if bare == greeting or bare.startswith(greeting + " "):
				return self.default_agent, None, GREETING_CONFIDENCE
		return None

	@staticmethod
	def _mentions_recent_workout(lower: str, context: OrchestratorContext) -> bool:
		for workout in (*context.recent_workouts, *context.upcoming_workouts):
			title = workout.title.lower().strip()
			if title and title in lower:
				return True
			if workout.workout_type and _keyword_pattern(workout.workout_type.lower()).search(lower):
				return True
		return False

	@staticmethod
	def _tie_rank(agent_id: str) -> int:
		if agent_id in _AGENT_TIE_ORDER:
			return _AGENT_TIE_ORDER.index(agent_id)
		return len(_AGENT_TIE_ORDER)


async def classify_message(
	classifier: MessageClassifier,
	message: str,
	context: OrchestratorContext,
) -> MessageClassification:
	"""
	Run a classifier, normalizing any failure to ClassificationError.

	Raises:
		ClassificationError: If the classifier raised or returned something
			other than a MessageClassification
	"""
	try:
		classification = await classifier.classify(message, context)
	except ClassificationError:
		raise
	except Exception as e:
		raise ClassificationError(
			f"Classifier failed: {e}",
			context={"classifier": type(classifier).__name__},
		) from e

	if not isinstance(classification, MessageClassification):
		raise ClassificationError(
			f"Classifier returned {type(classification).__name__}, expected MessageClassification",
			context={"classifier": type(classifier).__name__},
		)
	return classification
