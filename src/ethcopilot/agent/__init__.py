"""Conversation loop for the Ethereum copilot.

The orchestrator drives grounding, reasoning and tool dispatch. The tool
registry and the reasoning boundary live in their own modules.
"""

from .agent import (
    Orchestrator,
    Reply,
    build_orchestrator_async,
    close_orchestrator,
    get_orchestrator_async,
    set_orchestrator,
    submit,
)
from .reasoning import OpenAIReasoner, TextResult, ToolCallRequest
from .tools import ToolRegistry, get_tool_registry

__all__ = [
    "OpenAIReasoner",
    "Orchestrator",
    "Reply",
    "TextResult",
    "ToolCallRequest",
    "ToolRegistry",
    "build_orchestrator_async",
    "close_orchestrator",
    "get_orchestrator_async",
    "get_tool_registry",
    "set_orchestrator",
    "submit",
]
