"""Orchestrator module - Context building, classification, dispatch, and aggregation."""

from .aggregator import AGENT_PRIORITY, Aggregate, ResultAggregator
from .classifier import KeywordClassifier, MessageClassifier, TOPIC_AGENTS
from .context_builder import ContextBuilder
from .dispatcher import AgentDispatcher
from .flow import TRIGGER_AGENTS, FlowRun, Orchestrator
from .registry import CORE_AGENTS, Agent, AgentRegistry, FunctionAgent

__all__ = [
	"Orchestrator",
	"FlowRun",
	"ContextBuilder",
	"KeywordClassifier",
	"MessageClassifier",
	"AgentRegistry",
	"Agent",
	"FunctionAgent",
	"AgentDispatcher",
	"ResultAggregator",
	"Aggregate",
	"AGENT_PRIORITY",
	"CORE_AGENTS",
	"TOPIC_AGENTS",
	"TRIGGER_AGENTS",
]
