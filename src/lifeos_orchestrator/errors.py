"""
Error taxonomy for the orchestrator.

Fatal errors (context build, classification, aggregation) abort a flow and
propagate to the caller with the flow type and stage attached. Agent errors
are isolated: they are captured into the dispatch result instead of raised.
"""

from datetime import datetime
from typing import Any, Optional


class OrchestratorError(Exception):
	"""Base class for all orchestrator errors."""

	code = "ORCHESTRATOR_ERROR"

	def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
		super().__init__(message)
		self.message = message
		self.context = context or {}
		self.timestamp = datetime.now()
		# Filled in by the flow controller when the error aborts a flow
		self.flow_type: Optional[str] = None
		self.stage: Optional[str] = None

	def to_dict(self) -> dict[str, Any]:
		"""Serialize the error for logs and event payloads."""
		return {
			"name": type(self).__name__,
			"message": self.message,
			"code": self.code,
			"context": self.context,
			"flow_type": self.flow_type,
			"stage": self.stage,
			"timestamp": self.timestamp.isoformat(),
		}


class ContextBuildError(OrchestratorError):
	"""Mandatory context data (user, tasks, calendar) could not be loaded."""

	code = "CONTEXT_BUILD_ERROR"


class AgentInvocationError(OrchestratorError):
	"""An individual agent failed. Isolated, never fatal to the flow."""

	code = "AGENT_ERROR"

	def __init__(self, message: str, agent_id: str, context: Optional[dict[str, Any]] = None):
		super().__init__(message, context)
		self.agent_id = agent_id


class AgentTimeoutError(AgentInvocationError):
	"""An agent did not resolve within its timeout."""

	code = "AGENT_TIMEOUT"

	def __init__(self, agent_id: str, timeout: float, context: Optional[dict[str, Any]] = None):
		super().__init__(f"Agent {agent_id} timed out after {timeout:g}s", agent_id, context)
		self.timeout = timeout


class AgentNotFoundError(AgentInvocationError):
	"""The requested agent is not registered."""

	code = "AGENT_NOT_FOUND"

	def __init__(self, agent_id: str):
		super().__init__(f"Agent not registered: {agent_id}", agent_id)


class ClassificationError(OrchestratorError):
	"""The message classifier is unavailable. Fatal only for chat flows."""

	code = "CLASSIFICATION_ERROR"


class AggregationError(OrchestratorError):
	"""Agent outputs could not be merged or persisted."""

	code = "AGGREGATION_ERROR"


class FlowCancelledError(OrchestratorError):
	"""The flow observed an external cancellation signal."""

	code = "FLOW_CANCELLED"
