"""Orchestrator.

Runs the decision loop for access requests: builds the policy
instruction, talks to the LLM via LlamaIndex, and executes the tools the
model selects.
"""

from orchestrator.llm import LLMProvider, create_llm_provider
from orchestrator.conversation import ConversationState
from orchestrator.policy import AccessPolicy
from orchestrator.agent import AccessRequestAgent

__all__ = [
    "LLMProvider",
    "create_llm_provider",
    "ConversationState",
    "AccessPolicy",
    "AccessRequestAgent",
]
