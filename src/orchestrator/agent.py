"""Access Request Agent - the tool-calling orchestration loop.

The agent coordinates:
- Seeding the conversation from the access policy
- Model turns, each bounded by a deadline
- Sequential execution of the tools a turn requests
- Feeding results back until the model gives a final answer
"""

import asyncio
import json
from typing import Any, Optional

from shared.config import AgentSettings, LLMSettings
from shared.errors import ModelCallError, UnknownToolError
from shared.logging import get_logger
from shared.models import (
    AgentOutcome,
    LLMResponse,
    LoopState,
    NormalizedRequest,
    TerminationReason,
    ToolCallRequest,
    ToolInvocation,
    ToolResult,
)
from mcp_server.executor import ToolExecutor
from mcp_server.registry import ToolRegistry, get_registry
from orchestrator.conversation import ConversationState
from orchestrator.llm import LLMProvider
from orchestrator.policy import AccessPolicy

logger = get_logger(__name__)


LOOP_EXCEEDED_MESSAGE = (
    "Access request processing stopped: the decision model did not reach a "
    "final determination within {limit} turns."
)


class AccessRequestAgent:
    """
    Drives one decision conversation per access request.

    The loop moves between three states:
    1. AWAITING_MODEL_TURN: request the next model response
    2. EXECUTING_TOOLS: run every tool call of that response, in order
    3. TERMINATED: the model answered without tool calls, or the turn
       limit was reached

    Tool side effects are never rolled back. The registry, executor and
    provider are shared across requests; conversation state is not.
    """

    def __init__(
        self,
        llm_provider: LLMProvider,
        executor: ToolExecutor,
        registry: Optional[ToolRegistry] = None,
        policy: Optional[AccessPolicy] = None,
        settings: Optional[AgentSettings] = None,
        llm_settings: Optional[LLMSettings] = None
    ) -> None:
        """
        Initialize the agent.

        Args:
            llm_provider: Decision model provider
            executor: Tool executor bound to a governance adapter
            registry: Tool registry offered to the model
            policy: Access policy rendered into the system instruction
            settings: Loop limits and deadlines
            llm_settings: Sampling settings for model calls
        """
        self.llm = llm_provider
        self.executor = executor
        self.registry = registry or get_registry()
        self.policy = policy or AccessPolicy()
        self.settings = settings or AgentSettings()
        self.llm_settings = llm_settings or LLMSettings()

    async def process(self, request: NormalizedRequest) -> AgentOutcome:
        """
        Run the loop for one access request.

        Args:
            request: Normalized access request

        Returns:
            Final outcome with every tool invocation and the derived decision

        Raises:
            ModelCallError: If a model call fails or exceeds its deadline
        """
        logger.info(
            "Processing access request",
            access_request_id=request.access_request_id,
            requester=request.requester_email,
            requested_role=request.requested_role_name,
            policy_version=self.policy.version
        )

        conversation = ConversationState(self.policy.build_instruction(request))
        tools = self.registry.get_tools_for_llm()
        invocations: list[ToolInvocation] = []
        state = LoopState.AWAITING_MODEL_TURN
        iterations = 0

        while state is LoopState.AWAITING_MODEL_TURN:
            if iterations >= self.settings.max_iterations:
                logger.warning(
                    "Max model turns reached",
                    access_request_id=request.access_request_id,
                    iterations=iterations
                )
                return self._finish(
                    request,
                    TerminationReason.ITERATION_LIMIT,
                    LOOP_EXCEEDED_MESSAGE.format(limit=self.settings.max_iterations),
                    iterations,
                    invocations
                )

            iterations += 1
            response = await self._request_turn(conversation, tools, iterations)

            if not response.tool_calls:
                state = LoopState.TERMINATED
                final_message = response.content or ""
                logger.info(
                    "Final determination",
                    access_request_id=request.access_request_id,
                    iterations=iterations,
                    determination=final_message
                )
                return self._finish(
                    request,
                    TerminationReason.FINAL_ANSWER,
                    final_message,
                    iterations,
                    invocations
                )

            state = LoopState.EXECUTING_TOOLS
            tool_calls = self._with_call_ids(response.tool_calls, iterations)
            logger.info(
                "Model requested tool calls",
                count=len(tool_calls),
                iteration=iterations
            )
            conversation.add_assistant(response.content, tool_calls=tool_calls)

            for tool_call in tool_calls:
                invocation = await self._execute_tool_call(
                    tool_call, request.access_request_id, iterations
                )
                conversation.add_tool_result(invocation.call_id, invocation.result)
                invocations.append(invocation)

            pending = conversation.pending_tool_call_ids()
            if pending:
                raise RuntimeError(f"Tool calls left without results: {pending}")

            state = LoopState.AWAITING_MODEL_TURN

        raise RuntimeError(f"Agent loop left in state {state.value}")

    async def _request_turn(
        self,
        conversation: ConversationState,
        tools: list[dict[str, Any]],
        iteration: int
    ) -> LLMResponse:
        """Request one model turn within the model deadline."""
        try:
            return await asyncio.wait_for(
                self.llm.complete(
                    messages=conversation.messages,
                    tools=tools,
                    temperature=self.llm_settings.temperature,
                    tool_choice=self.llm_settings.tool_choice
                ),
                timeout=self.settings.model_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise ModelCallError(
                f"Model turn {iteration} exceeded {self.settings.model_timeout_seconds}s"
            ) from e
        except Exception as e:
            raise ModelCallError(f"Model turn {iteration} failed: {e}") from e

    @staticmethod
    def _with_call_ids(
        tool_calls: list[dict[str, Any]],
        iteration: int
    ) -> list[dict[str, Any]]:
        """Give every tool call an ID so its result can be correlated."""
        return [
            tool_call if tool_call.get("id") else {**tool_call, "id": f"call_{iteration}_{index}"}
            for index, tool_call in enumerate(tool_calls)
        ]

    def _parse_tool_call(self, tool_call: dict[str, Any]) -> ToolCallRequest:
        """
        Decode a raw model tool call.

        Raises:
            ValueError: If the arguments are not a JSON object
        """
        function = tool_call.get("function", {})
        raw_arguments = function.get("arguments") or "{}"

        try:
            arguments = json.loads(raw_arguments) if isinstance(raw_arguments, str) else raw_arguments
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid tool call arguments: {e.msg}") from e

        if not isinstance(arguments, dict):
            raise ValueError("Invalid tool call arguments: expected a JSON object")

        return ToolCallRequest(
            call_id=tool_call.get("id", ""),
            tool_name=function.get("name", ""),
            arguments=arguments
        )

    async def _execute_tool_call(
        self,
        tool_call: dict[str, Any],
        access_request_id: str,
        iteration: int
    ) -> ToolInvocation:
        """Execute one requested tool; failures become failed results."""
        call_id = tool_call.get("id", "")
        tool_name = tool_call.get("function", {}).get("name", "")

        try:
            request = self._parse_tool_call(tool_call)
        except ValueError as e:
            logger.warning("Malformed tool call", tool=tool_name, error=str(e))
            return ToolInvocation(
                call_id=call_id,
                tool_name=tool_name,
                result=ToolResult.fail(str(e), "VALIDATION_ERROR"),
                iteration=iteration
            )

        try:
            result = await self.executor.execute(
                request.tool_name,
                request.arguments,
                request_id=access_request_id
            )
        except UnknownToolError as e:
            logger.warning("Model requested unknown tool", tool=e.tool_name)
            result = ToolResult.fail(
                f"{e}. Available tools: {', '.join(self.registry.names())}",
                "UNKNOWN_TOOL"
            )

        return ToolInvocation(
            call_id=request.call_id,
            tool_name=request.tool_name,
            arguments=request.arguments,
            result=result,
            iteration=iteration
        )

    def _finish(
        self,
        request: NormalizedRequest,
        termination: TerminationReason,
        final_message: str,
        iterations: int,
        invocations: list[ToolInvocation]
    ) -> AgentOutcome:
        decision = self.policy.derive_decision(invocations, final_message)

        logger.info(
            "Access request processed",
            access_request_id=request.access_request_id,
            termination=termination.value,
            decision=decision.action.value,
            granted=decision.chosen_bundle_ids,
            tool_calls=len(invocations)
        )

        return AgentOutcome(
            access_request_id=request.access_request_id,
            state=LoopState.TERMINATED,
            termination=termination,
            final_message=final_message,
            iterations=iterations,
            invocations=invocations,
            decision=decision,
            policy_version=self.policy.version
        )
