"""Orchestrator.

Runs chat turns: loads conversation history, drives the model through the
static tool catalog, executes tool calls via the gateway client and
assembles the final answer.
"""

from orchestrator.assembler import ResponseAssembler
from orchestrator.engine import OrchestrationEngine, TurnEngine
from orchestrator.llm import LLMProvider, create_llm_provider
from orchestrator.mock import MockEngine

__all__ = [
    "LLMProvider",
    "create_llm_provider",
    "OrchestrationEngine",
    "TurnEngine",
    "MockEngine",
    "ResponseAssembler",
]
