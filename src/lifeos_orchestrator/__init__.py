"""LifeOS Orchestrator - Coordinates specialized life agents into daily flows."""

from .config import Config, get_config
from .errors import (
	AgentInvocationError,
	AgentNotFoundError,
	AgentTimeoutError,
	AggregationError,
	ClassificationError,
	ContextBuildError,
	FlowCancelledError,
	OrchestratorError,
)
from .events import EventBus, attach_event_logger
from .instrumentation import AgentRunRecorder, AgentRunStore
from .logging_config import setup_logging
from .models import (
	AgentOutput,
	EventTrigger,
	EventTriggerType,
	OrchestratorConfig,
	OrchestratorContext,
)
from .orchestrator import AgentRegistry, FunctionAgent, Orchestrator
from .store import DataStore, SQLiteDataStore

__all__ = [
	"Orchestrator",
	"OrchestratorConfig",
	"OrchestratorContext",
	"AgentOutput",
	"EventTrigger",
	"EventTriggerType",
	"AgentRegistry",
	"FunctionAgent",
	"EventBus",
	"attach_event_logger",
	"DataStore",
	"SQLiteDataStore",
	"Config",
	"get_config",
	"setup_logging",
	"AgentRunStore",
	"AgentRunRecorder",
	"OrchestratorError",
	"ContextBuildError",
	"AgentInvocationError",
	"AgentTimeoutError",
	"AgentNotFoundError",
	"ClassificationError",
	"AggregationError",
	"FlowCancelledError",
]
