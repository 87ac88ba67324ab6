"""Tests for orchestrator components."""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from shared.config import AgentSettings, LLMSettings
from shared.errors import ModelCallError
from shared.models import (
    ConversationMessage,
    DecisionAction,
    LLMResponse,
    LoopState,
    NormalizedRequest,
    TerminationReason,
    ToolInvocation,
    ToolResult,
)


USER_ID = "00uq3zp622HWDY2Jc697"
APPLICATION_ID = "0oavij8jl7fx84fA5697"
BUNDLE_VIEWER = "enbmtw1byu10MX9wZ696"
BUNDLE_STORAGE_VIEWER = "enbmtw1buZQG1bZZZ696"
BUNDLE_STORAGE_ADMIN = "enbmtv1gportvxifd696"
BUNDLE_BIGQUERY = "enbmtv1gl03rpGl0G696"


def make_request(**overrides) -> NormalizedRequest:
    values = {
        "requester_user_id": USER_ID,
        "requester_email": "mike.tran@okta.com",
        "requested_role_name": "Storage Object Admin - storage.objectAdmin",
        "requested_role_description": "Grants full control over Cloud Storage objects.",
        "catalog_entry_id": "cat-1",
        "justification_text": "INC-4411: need to read storage logs for the outage review",
        "access_request_id": "req-100",
        "application_id": APPLICATION_ID,
    }
    values.update(overrides)
    return NormalizedRequest(**values)


def tool_call(call_id: str, name: str, **arguments) -> dict:
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": json.dumps(arguments)},
    }


def tool_turn(*calls) -> LLMResponse:
    return LLMResponse(content=None, tool_calls=list(calls), finish_reason="tool_calls")


def final_turn(content: str) -> LLMResponse:
    return LLMResponse(content=content, finish_reason="stop")


def make_agent(turns, failing_bundle_ids=None, **agent_settings):
    from domains.governance import MockGovernanceAdapter
    from mcp_server.executor import ToolExecutor
    from orchestrator.agent import AccessRequestAgent
    from orchestrator.llm import ScriptedLLMProvider

    provider = ScriptedLLMProvider(turns=turns)
    executor = ToolExecutor(
        adapter=MockGovernanceAdapter(latency_seconds=0, failing_bundle_ids=failing_bundle_ids)
    )
    agent = AccessRequestAgent(
        llm_provider=provider,
        executor=executor,
        settings=AgentSettings(**agent_settings)
    )
    return agent, provider


class TestConversationState:
    """Tests for ConversationState."""

    def test_seeded_with_system_prompt(self):
        from orchestrator.conversation import ConversationState

        conversation = ConversationState("You are a security engineer.")

        assert len(conversation) == 1
        assert conversation.messages[0].role == "system"

    def test_messages_is_snapshot(self):
        from orchestrator.conversation import ConversationState

        conversation = ConversationState()
        snapshot = conversation.messages
        conversation.add_user("hello")

        assert snapshot == []
        assert len(conversation) == 1

    def test_tool_result_correlation(self):
        from orchestrator.conversation import ConversationState

        conversation = ConversationState("system")
        conversation.add_assistant(None, tool_calls=[
            tool_call("call_1", "list_entitlement_bundles", applicationId="app"),
            tool_call("call_2", "add_request_message", requestId="r", message="m"),
        ])

        assert conversation.pending_tool_call_ids() == ["call_1", "call_2"]

        message = conversation.add_tool_result("call_1", ToolResult.ok([{"id": "enb1"}]))

        assert message.role == "tool"
        assert message.tool_call_id == "call_1"
        assert json.loads(message.content) == {"success": True, "data": [{"id": "enb1"}]}
        assert conversation.pending_tool_call_ids() == ["call_2"]

        conversation.add_tool_result("call_2", ToolResult.fail("boom", "BACKEND_ERROR"))
        assert conversation.pending_tool_call_ids() == []
        assert json.loads(conversation.messages[-1].content) == {"success": False, "error": "boom"}

    def test_pending_with_id_less_call(self):
        from orchestrator.conversation import ConversationState

        conversation = ConversationState("system")
        conversation.add_assistant(None, tool_calls=[
            {"type": "function", "function": {"name": "list_entitlement_bundles", "arguments": "{}"}},
        ])

        assert conversation.pending_tool_call_ids() == [None]


class TestAccessPolicy:
    """Tests for the access policy."""

    def test_instruction_includes_request(self):
        from orchestrator.policy import AccessPolicy

        instruction = AccessPolicy().build_instruction(make_request())

        assert 'requestId: "req-100"' in instruction
        assert f'userId: "{USER_ID}"' in instruction
        assert f'applicationId: "{APPLICATION_ID}"' in instruction
        assert "INC-4411" in instruction
        assert "$" not in instruction

    def test_custom_template(self):
        from orchestrator.policy import AccessPolicy

        policy = AccessPolicy(version="v2", template="Decide for $requester_email, cost $$5")

        assert policy.build_instruction(make_request()) == "Decide for mike.tran@okta.com, cost $5"
        assert policy.version == "v2"

    def _grant_invocation(self, result: ToolResult) -> ToolInvocation:
        return ToolInvocation(call_id="c", tool_name="create_grant", result=result, iteration=1)

    def test_no_grants_is_deny(self):
        from orchestrator.policy import AccessPolicy

        decision = AccessPolicy().derive_decision([], "Justification lacks detail")

        assert decision.action == DecisionAction.DENY
        assert decision.chosen_bundle_ids == []
        assert decision.rationale == "Justification lacks detail"

    def test_all_created_is_grant(self):
        from orchestrator.policy import AccessPolicy

        invocation = self._grant_invocation(ToolResult.ok([
            {"entitlementBundleId": BUNDLE_VIEWER, "grantId": "g1", "status": "created"},
        ]))

        decision = AccessPolicy().derive_decision([invocation], "done")

        assert decision.action == DecisionAction.GRANT
        assert decision.chosen_bundle_ids == [BUNDLE_VIEWER]

    def test_mixed_is_partial(self):
        from orchestrator.policy import AccessPolicy

        invocation = self._grant_invocation(ToolResult.fail(
            "Created 1 of 2 grants",
            "PARTIAL_GRANT_FAILURE",
            details=[
                {"entitlementBundleId": BUNDLE_VIEWER, "status": "failed", "error": "400"},
                {"entitlementBundleId": BUNDLE_BIGQUERY, "status": "created", "grantId": "g2"},
            ]
        ))

        decision = AccessPolicy().derive_decision([invocation], "done")

        assert decision.action == DecisionAction.PARTIAL
        assert decision.chosen_bundle_ids == [BUNDLE_BIGQUERY]


class TestLLMProvider:
    """Tests for LLM providers."""

    @pytest.mark.asyncio
    async def test_scripted_provider_default_answer(self):
        from orchestrator.llm import ScriptedLLMProvider

        provider = ScriptedLLMProvider()
        response = await provider.complete([ConversationMessage(role="user", content="Hello")])

        assert response.content is not None
        assert response.tool_calls is None
        assert response.finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_scripted_provider_replays_in_order(self):
        from orchestrator.llm import ScriptedLLMProvider

        provider = ScriptedLLMProvider()
        provider.queue(
            tool_turn(tool_call("call_1", "list_entitlement_bundles", applicationId="app")),
            lambda messages: final_turn(f"saw {len(messages)} messages"),
        )
        messages = [ConversationMessage(role="user", content="Use a tool")]

        first = await provider.complete(messages, tools=[], temperature=0.2, tool_choice="auto")
        second = await provider.complete(messages)

        assert first.tool_calls[0]["function"]["name"] == "list_entitlement_bundles"
        assert second.content == "saw 1 messages"
        assert provider.call_history[0]["temperature"] == 0.2
        assert len(provider.call_history) == 2

    def test_create_llm_provider_factory(self):
        from orchestrator.llm import OpenAIProvider, ScriptedLLMProvider, create_llm_provider

        assert isinstance(create_llm_provider(LLMSettings(provider="scripted")), ScriptedLLMProvider)
        assert isinstance(create_llm_provider(LLMSettings(provider="openai")), OpenAIProvider)

    def test_invalid_provider_raises(self):
        from orchestrator.llm import create_llm_provider

        settings = LLMSettings(provider="invalid_provider")

        with pytest.raises(ValueError, match="Unsupported"):
            create_llm_provider(settings)

    def test_extract_tool_calls(self):
        """Test reading tool calls from object and dict forms."""
        from orchestrator.llm import LlamaIndexProvider

        object_call = MagicMock()
        object_call.id = "call_1"
        object_call.function.name = "create_grant"
        object_call.function.arguments = '{"userId": "u"}'
        message = MagicMock()
        message.additional_kwargs = {"tool_calls": [
            object_call,
            {"id": "call_2", "function": {"name": "add_request_message", "arguments": None}},
        ]}

        tool_calls = LlamaIndexProvider._extract_tool_calls(message)

        assert tool_calls == [
            {"id": "call_1", "type": "function",
             "function": {"name": "create_grant", "arguments": '{"userId": "u"}'}},
            {"id": "call_2", "type": "function",
             "function": {"name": "add_request_message", "arguments": "{}"}},
        ]

    def test_llama_index_base_is_abstract(self):
        from orchestrator.llm import LlamaIndexProvider

        with pytest.raises(TypeError):
            LlamaIndexProvider(LLMSettings())

    def test_no_tool_calls(self):
        from orchestrator.llm import LlamaIndexProvider

        message = MagicMock()
        message.additional_kwargs = {}

        assert LlamaIndexProvider._extract_tool_calls(message) is None

    @pytest.mark.asyncio
    async def test_complete_passes_tools_per_call(self):
        """Test that sampling options are call arguments, not shared state."""
        from orchestrator.llm import OpenAIProvider

        chat_response = MagicMock()
        chat_response.message.content = "All set"
        chat_response.message.additional_kwargs = {}
        chat_response.raw.usage.prompt_tokens = 12
        chat_response.raw.usage.completion_tokens = 3

        provider = OpenAIProvider(LLMSettings(provider="openai", max_retries=1))
        provider._llm = MagicMock()
        provider._llm.achat = AsyncMock(return_value=chat_response)

        tools = [{"type": "function", "function": {"name": "t"}}]
        response = await provider.complete(
            [ConversationMessage(role="system", content="policy")],
            tools=tools,
            temperature=0.0,
            tool_choice="auto"
        )

        kwargs = provider._llm.achat.call_args.kwargs
        assert kwargs == {"temperature": 0.0, "tools": tools, "tool_choice": "auto"}
        assert response.content == "All set"
        assert response.finish_reason == "stop"
        assert response.usage == {"prompt_tokens": 12, "completion_tokens": 3}

    @pytest.mark.asyncio
    async def test_complete_propagates_errors(self):
        from orchestrator.llm import OpenAIProvider

        provider = OpenAIProvider(LLMSettings(provider="openai", max_retries=3))
        provider._llm = MagicMock()
        provider._llm.achat = AsyncMock(side_effect=ValueError("bad request"))

        with pytest.raises(ValueError, match="bad request"):
            await provider.complete([ConversationMessage(role="user", content="hi")])

        # Non-transient errors are not retried
        assert provider._llm.achat.await_count == 1


class TestAccessRequestAgent:
    """Tests for the agent loop."""

    @pytest.mark.asyncio
    async def test_direct_final_answer(self):
        """Test a turn without tool calls terminates the loop."""
        agent, provider = make_agent([final_turn("Nothing to do")])

        outcome = await agent.process(make_request())

        assert outcome.state == LoopState.TERMINATED
        assert outcome.termination == TerminationReason.FINAL_ANSWER
        assert outcome.final_message == "Nothing to do"
        assert outcome.iterations == 1
        assert outcome.invocations == []
        assert outcome.policy_version == agent.policy.version

        first_call = provider.call_history[0]
        assert first_call["messages"][0].role == "system"
        assert [t["function"]["name"] for t in first_call["tools"]] == [
            "list_entitlement_bundles", "create_grant", "add_request_message"
        ]
        assert first_call["temperature"] == agent.llm_settings.temperature

    @pytest.mark.asyncio
    async def test_least_privilege_grant(self):
        """Test an admin request narrowed to a viewer grant."""
        agent, provider = make_agent([
            tool_turn(tool_call("call_1", "list_entitlement_bundles", applicationId=APPLICATION_ID)),
            tool_turn(tool_call(
                "call_2", "create_grant",
                userId=USER_ID,
                entitlementIds=[BUNDLE_STORAGE_VIEWER],
                reasoning="Read access to storage logs is sufficient"
            )),
            tool_turn(tool_call(
                "call_3", "add_request_message",
                requestId="req-100",
                message="Granted Storage Object Viewer instead of Storage Object Admin"
            )),
            final_turn("Granted Storage Object Viewer."),
        ])

        outcome = await agent.process(make_request())

        assert outcome.termination == TerminationReason.FINAL_ANSWER
        assert outcome.iterations == 4
        assert [i.tool_name for i in outcome.invocations] == [
            "list_entitlement_bundles", "create_grant", "add_request_message"
        ]
        assert all(i.result.success for i in outcome.invocations)
        assert outcome.decision.action == DecisionAction.GRANT
        assert outcome.decision.chosen_bundle_ids == [BUNDLE_STORAGE_VIEWER]
        assert BUNDLE_STORAGE_ADMIN not in outcome.decision.chosen_bundle_ids

        # Every turn sees the whole conversation, system instruction included
        last_messages = provider.call_history[-1]["messages"]
        assert last_messages[0].role == "system"
        assert [m.role for m in last_messages[1:]] == [
            "assistant", "tool", "assistant", "tool", "assistant", "tool"
        ]
        assert last_messages[-1].tool_call_id == "call_3"

    @pytest.mark.asyncio
    async def test_insufficient_justification_denied(self):
        """Test a deny posts a message and creates no grant."""
        agent, _ = make_agent([
            tool_turn(tool_call(
                "call_1", "add_request_message",
                requestId="req-200",
                message="The justification does not contain enough information"
            )),
            final_turn("Denied: justification lacks an incident number and resources."),
        ])

        outcome = await agent.process(make_request(
            access_request_id="req-200",
            justification_text="need access"
        ))

        assert outcome.calls_to("create_grant") == []
        assert len(outcome.calls_to("add_request_message")) == 1
        assert outcome.decision.action == DecisionAction.DENY
        assert outcome.decision.chosen_bundle_ids == []

    @pytest.mark.asyncio
    async def test_partial_grant_failure(self):
        """Test a failed grant is reported and the loop continues."""
        def check_failure_visible(messages):
            fed_back = json.loads(messages[-1].content)
            assert fed_back["success"] is False
            assert [d["status"] for d in fed_back["details"]] == ["failed", "created"]
            return final_turn("Granted BigQuery Data Editor; Viewer grant failed.")

        agent, _ = make_agent(
            [
                tool_turn(tool_call(
                    "call_1", "create_grant",
                    userId=USER_ID,
                    entitlementIds=[BUNDLE_VIEWER, BUNDLE_BIGQUERY],
                    reasoning="BigQuery edits for the quarterly report"
                )),
                check_failure_visible,
            ],
            failing_bundle_ids=[BUNDLE_VIEWER]
        )

        outcome = await agent.process(make_request())

        grant_result = outcome.calls_to("create_grant")[0].result
        assert grant_result.error_code == "PARTIAL_GRANT_FAILURE"
        assert outcome.decision.action == DecisionAction.PARTIAL
        assert outcome.decision.chosen_bundle_ids == [BUNDLE_BIGQUERY]
        assert outcome.termination == TerminationReason.FINAL_ANSWER

    @pytest.mark.asyncio
    async def test_multiple_calls_run_in_order(self):
        """Test every call of one turn gets a result, in emission order."""
        agent, provider = make_agent([
            tool_turn(
                tool_call("call_a", "list_entitlement_bundles", applicationId=APPLICATION_ID),
                tool_call("call_b", "add_request_message", requestId="req-100", message="Working"),
            ),
            final_turn("done"),
        ])

        outcome = await agent.process(make_request())

        assert [i.call_id for i in outcome.invocations] == ["call_a", "call_b"]
        assert all(i.iteration == 1 for i in outcome.invocations)
        tool_messages = [m for m in provider.call_history[1]["messages"] if m.role == "tool"]
        assert [m.tool_call_id for m in tool_messages] == ["call_a", "call_b"]

    @pytest.mark.asyncio
    async def test_iteration_limit(self):
        """Test the loop stops when the model never gives a final answer."""
        agent, provider = make_agent([], max_iterations=3)
        provider.queue(*[
            tool_turn(tool_call(f"call_{i}", "list_entitlement_bundles", applicationId=APPLICATION_ID))
            for i in range(5)
        ])

        outcome = await agent.process(make_request())

        assert outcome.termination == TerminationReason.ITERATION_LIMIT
        assert outcome.iterations == 3
        assert len(provider.call_history) == 3
        assert len(outcome.invocations) == 3
        assert "3 turns" in outcome.final_message

    @pytest.mark.asyncio
    async def test_unknown_tool_fed_back(self):
        """Test an unknown tool becomes a failed result and the loop continues."""
        agent, provider = make_agent([
            tool_turn(tool_call("call_1", "grant_admin", userId=USER_ID)),
            final_turn("Could not proceed"),
        ])

        outcome = await agent.process(make_request())

        result = outcome.invocations[0].result
        assert not result.success
        assert result.error_code == "UNKNOWN_TOOL"
        assert "Unknown tool: grant_admin" in result.error
        assert "create_grant" in result.error
        assert provider.call_history[1]["messages"][-1].tool_call_id == "call_1"
        assert outcome.termination == TerminationReason.FINAL_ANSWER

    @pytest.mark.asyncio
    async def test_tool_calls_without_id(self):
        """Test calls missing an ID get one and stay correlated."""
        agent, provider = make_agent([
            tool_turn(
                {
                    "type": "function",
                    "function": {
                        "name": "list_entitlement_bundles",
                        "arguments": json.dumps({"applicationId": APPLICATION_ID}),
                    },
                },
                {
                    "id": None,
                    "type": "function",
                    "function": {
                        "name": "add_request_message",
                        "arguments": json.dumps({"requestId": "req-100", "message": "Working"}),
                    },
                },
            ),
            final_turn("done"),
        ])

        outcome = await agent.process(make_request())

        assert [i.call_id for i in outcome.invocations] == ["call_1_0", "call_1_1"]
        assert all(i.result.success for i in outcome.invocations)

        messages = provider.call_history[1]["messages"]
        assert [tc["id"] for tc in messages[1].tool_calls] == ["call_1_0", "call_1_1"]
        assert [m.tool_call_id for m in messages if m.role == "tool"] == ["call_1_0", "call_1_1"]
        assert outcome.termination == TerminationReason.FINAL_ANSWER

    @pytest.mark.asyncio
    async def test_malformed_arguments_fed_back(self):
        """Test non-JSON arguments become a validation failure."""
        agent, _ = make_agent([
            tool_turn({
                "id": "call_1",
                "type": "function",
                "function": {"name": "create_grant", "arguments": "{not json"},
            }),
            final_turn("done"),
        ])

        outcome = await agent.process(make_request())

        result = outcome.invocations[0].result
        assert result.error_code == "VALIDATION_ERROR"
        assert "Invalid tool call arguments" in result.error
        assert outcome.decision.action == DecisionAction.DENY

    @pytest.mark.asyncio
    async def test_model_error_propagates(self):
        """Test that a failing model call aborts the loop."""
        from domains.governance import MockGovernanceAdapter
        from mcp_server.executor import ToolExecutor
        from orchestrator.agent import AccessRequestAgent

        llm = AsyncMock()
        llm.complete.side_effect = RuntimeError("model unavailable")
        agent = AccessRequestAgent(
            llm_provider=llm,
            executor=ToolExecutor(adapter=MockGovernanceAdapter(latency_seconds=0))
        )

        with pytest.raises(ModelCallError, match="model unavailable"):
            await agent.process(make_request())

    @pytest.mark.asyncio
    async def test_model_timeout(self):
        """Test that a slow model call is bounded by the deadline."""
        from domains.governance import MockGovernanceAdapter
        from mcp_server.executor import ToolExecutor
        from orchestrator.agent import AccessRequestAgent

        async def slow_complete(**kwargs):
            await asyncio.sleep(1)
            return final_turn("too late")

        llm = AsyncMock()
        llm.complete.side_effect = slow_complete
        agent = AccessRequestAgent(
            llm_provider=llm,
            executor=ToolExecutor(adapter=MockGovernanceAdapter(latency_seconds=0)),
            settings=AgentSettings(model_timeout_seconds=0.01)
        )

        with pytest.raises(ModelCallError, match="exceeded"):
            await agent.process(make_request())

    @pytest.mark.asyncio
    async def test_concurrent_requests_are_isolated(self):
        """Test that concurrent loops share nothing but the tools."""
        from domains.governance import MockGovernanceAdapter
        from mcp_server.executor import ToolExecutor
        from orchestrator.agent import AccessRequestAgent
        from orchestrator.llm import LLMProvider

        class EchoProvider(LLMProvider):
            """Answers with the request ID found in the system instruction."""

            async def complete(self, messages, tools=None, temperature=None, tool_choice=None):
                await asyncio.sleep(0)
                if len(messages) == 1:
                    request_id = messages[0].content.split('requestId: "')[1].split('"')[0]
                    return tool_turn(tool_call(
                        f"call-{request_id}", "add_request_message",
                        requestId=request_id, message="ack"
                    ))
                return final_turn(messages[-1].tool_call_id)

        agent = AccessRequestAgent(
            llm_provider=EchoProvider(),
            executor=ToolExecutor(adapter=MockGovernanceAdapter(latency_seconds=0))
        )

        outcomes = await asyncio.gather(*[
            agent.process(make_request(access_request_id=f"req-{i}")) for i in range(5)
        ])

        for i, outcome in enumerate(outcomes):
            assert outcome.access_request_id == f"req-{i}"
            assert outcome.final_message == f"call-req-{i}"
            assert outcome.invocations[0].result.data["requestId"] == f"req-{i}"
