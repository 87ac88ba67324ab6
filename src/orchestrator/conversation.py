"""Conversation state for one agent loop invocation.

A conversation is created per access request, grows append-only as the
model and tools take turns, and is discarded when the loop ends. It is
never shared between requests, so it needs no locking.
"""

import json
from typing import Any, Optional

from shared.models import ConversationMessage, ToolResult


class ConversationState:
    """
    Ordered, append-only message history.

    Responsibilities:
    - Hold the seeded system instruction
    - Record assistant turns, including their tool calls
    - Record tool results correlated by call ID
    """

    def __init__(self, system_prompt: Optional[str] = None) -> None:
        self._messages: list[ConversationMessage] = []
        if system_prompt:
            self.add_system(system_prompt)

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> list[ConversationMessage]:
        """Snapshot of the messages so far."""
        return list(self._messages)

    def _append(self, message: ConversationMessage) -> ConversationMessage:
        self._messages.append(message)
        return message

    def add_system(self, content: str) -> ConversationMessage:
        return self._append(ConversationMessage(role="system", content=content))

    def add_user(self, content: str) -> ConversationMessage:
        return self._append(ConversationMessage(role="user", content=content))

    def add_assistant(
        self,
        content: Optional[str],
        tool_calls: Optional[list[dict[str, Any]]] = None
    ) -> ConversationMessage:
        """Add an assistant turn, with the tool calls it requested."""
        return self._append(ConversationMessage(
            role="assistant",
            content=content or "",
            tool_calls=tool_calls
        ))

    def add_tool_result(self, tool_call_id: str, result: ToolResult) -> ConversationMessage:
        """Add a tool result correlated to its originating call."""
        return self._append(ConversationMessage(
            role="tool",
            content=json.dumps(result.for_model(), default=str),
            tool_call_id=tool_call_id
        ))

    def pending_tool_call_ids(self) -> list[str]:
        """Call IDs of the last assistant turn that have no result yet."""
        for index in range(len(self._messages) - 1, -1, -1):
            message = self._messages[index]
            if message.role == "assistant":
                answered = {
                    m.tool_call_id for m in self._messages[index + 1:] if m.role == "tool"
                }
                return [
                    tc.get("id") for tc in (message.tool_calls or [])
                    if tc.get("id") not in answered
                ]
        return []
