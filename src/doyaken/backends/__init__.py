from doyaken.backends.agent import CLIAgentBackend
from doyaken.backends.base import (
    AgentBackend,
    AgentRequest,
    AgentResult,
    BackendExecutionError,
    BackendInterruptedError,
    BackendProcessError,
    BackendTimeoutError,
)
from doyaken.backends.classify import Classifier, ErrorClass, classify_output
from doyaken.backends.registry import AGENTS, AgentSpec, get_agent, validate_agent

__all__ = [
    "AGENTS",
    "AgentBackend",
    "AgentRequest",
    "AgentResult",
    "AgentSpec",
    "BackendExecutionError",
    "BackendInterruptedError",
    "BackendProcessError",
    "BackendTimeoutError",
    "CLIAgentBackend",
    "Classifier",
    "ErrorClass",
    "classify_output",
    "get_agent",
    "validate_agent",
]
