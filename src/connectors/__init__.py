"""
Backend connectors.

Only the Vertex AI Agent Engine connector is provided; it is wired up with
`build_agent_engine_client`.
"""

from .agent_engine import (
    AgentEngineClient,
    AgentEngineTurn,
    TurnState,
    build_agent_engine_client,
    is_invalid_session_error,
)

__all__ = [
    "AgentEngineClient",
    "AgentEngineTurn",
    "TurnState",
    "build_agent_engine_client",
    "is_invalid_session_error",
]
