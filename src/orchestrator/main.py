"""Orchestrator - FastAPI Application.

The webhook service provides:
- The access request webhook
- A canned test request endpoint
- Health reporting (tool count and backend mode)
"""

import time
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import BackgroundTasks, Body, FastAPI, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from shared.config import Settings, get_settings
from shared.logging import bind_context, clear_context, get_logger, setup_logging
from shared.models import AgentOutcome, NormalizedRequest
from domains import GovernanceAdapter, create_governance_adapter
from mcp_server.audit import AuditLogger
from mcp_server.executor import ToolExecutor
from mcp_server.registry import get_registry
from orchestrator.agent import AccessRequestAgent
from orchestrator.llm import LLMProvider, create_llm_provider
from orchestrator.normalizer import normalize_webhook

logger = get_logger(__name__)


# Request/Response Models
class WebhookResponse(BaseModel):
    """Acknowledgement returned to the webhook caller."""
    model_config = ConfigDict(populate_by_name=True)

    status: str
    message: str
    oig_request_id: Optional[str] = Field(default=None, alias="oigRequestId")


class TestRequest(BaseModel):
    """Optional overrides for the canned test request."""
    justification: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    mode: str
    tool_count: int
    tools: list[str]
    model: str
    max_iterations: int


# Global instances
_settings: Optional[Settings] = None
_adapter: Optional[GovernanceAdapter] = None
_audit_logger: Optional[AuditLogger] = None
_agent: Optional[AccessRequestAgent] = None


def configure(
    settings: Settings,
    llm_provider: Optional[LLMProvider] = None,
    adapter: Optional[GovernanceAdapter] = None
) -> AccessRequestAgent:
    """
    Wire the agent from settings.

    Args:
        settings: Application settings
        llm_provider: Provider override, built from settings if omitted
        adapter: Governance adapter override, built from settings if omitted

    Returns:
        The configured agent
    """
    global _settings, _adapter, _audit_logger, _agent

    _settings = settings
    _adapter = adapter or create_governance_adapter(settings.governance)
    _audit_logger = AuditLogger(
        log_path=settings.orchestrator.audit_log_path,
        enabled=settings.orchestrator.enable_audit
    )

    registry = get_registry()
    executor = ToolExecutor(
        adapter=_adapter,
        registry=registry,
        timeout_seconds=settings.governance.timeout_seconds,
        audit_logger=_audit_logger
    )

    _agent = AccessRequestAgent(
        llm_provider=llm_provider or create_llm_provider(settings.llm),
        executor=executor,
        registry=registry,
        settings=settings.agent,
        llm_settings=settings.llm
    )

    logger.info(
        "Agent configured",
        mode=_adapter.mode,
        tools=registry.names(),
        model=settings.llm.model,
        max_iterations=settings.agent.max_iterations
    )
    return _agent


async def shutdown() -> None:
    """Flush audit entries and release backend connections."""
    if _audit_logger:
        await _audit_logger.flush()
    if _adapter:
        await _adapter.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting access request agent")

    if _agent is None:
        settings = get_settings()
        setup_logging(settings.log_level, json_output=settings.environment == "production")
        configure(settings)

    yield

    logger.info("Shutting down access request agent")
    await shutdown()


# Create FastAPI app
app = FastAPI(
    title="Access Request Agent",
    description="Decides cloud access requests with an LLM and grants entitlements",
    version="0.1.0",
    lifespan=lifespan
)


def _require_agent() -> AccessRequestAgent:
    if _agent is None or _settings is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Agent not initialized"
        )
    return _agent


async def _process_in_background(agent: AccessRequestAgent, request: NormalizedRequest) -> None:
    bind_context(access_request_id=request.access_request_id)
    try:
        await agent.process(request)
    except Exception as e:
        logger.error("Background access request processing failed", error=str(e), exc_info=True)
    finally:
        clear_context()


def _summarize(outcome: AgentOutcome) -> dict[str, Any]:
    return {
        "access_request_id": outcome.access_request_id,
        "termination": outcome.termination.value,
        "decision": outcome.decision.model_dump(mode="json"),
        "final_message": outcome.final_message,
        "iterations": outcome.iterations,
        "tool_calls": [
            {
                "tool": invocation.tool_name,
                "arguments": invocation.arguments,
                "result": invocation.result.for_model(),
            }
            for invocation in outcome.invocations
        ],
    }


@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    """Health check endpoint."""
    agent = _require_agent()

    return HealthResponse(
        status="healthy",
        mode=agent.executor.mode,
        tool_count=len(agent.registry),
        tools=agent.registry.names(),
        model=agent.llm_settings.model,
        max_iterations=agent.settings.max_iterations
    )


@app.post("/webhook/access-request", response_model=WebhookResponse, tags=["Webhook"])
async def access_request_webhook(
    background_tasks: BackgroundTasks,
    payload: dict[str, Any] = Body(...)
):
    """
    Receive an access request and run the decision loop.

    The decision itself is delivered to the request through the
    add_request_message tool, not through this response.
    """
    agent = _require_agent()
    logger.info("Received access request webhook", fields=sorted(payload))

    try:
        request = normalize_webhook(payload, _settings.governance.application_id)
        bind_context(access_request_id=request.access_request_id)

        if _settings.orchestrator.background_processing:
            background_tasks.add_task(_process_in_background, agent, request)
        else:
            await agent.process(request)

    except Exception as e:
        logger.error("Webhook processing failed", error=str(e), exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "status": "error",
                "message": "Failed to process webhook",
                "error": str(e)
            }
        )
    finally:
        clear_context()

    logger.info("Webhook acknowledged", access_request_id=request.access_request_id)
    return WebhookResponse(
        status="received",
        message="Access request processing initiated",
        oig_request_id=request.access_request_id
    )


@app.post("/test", tags=["Webhook"])
async def test_request(body: Optional[TestRequest] = None):
    """Run a canned access request through the loop."""
    agent = _require_agent()

    request = NormalizedRequest(
        requester_user_id="00uq3zp622HWDY2Jc697",
        requester_email="mike.tran@okta.com",
        requested_role_name="Vertex AI Administrator - aiplatform.admin",
        requested_role_description=(
            "Grants admin permissions to read and write data and metadata from BigQuery tables"
        ),
        justification_text=(
            (body.justification if body else None)
            or "I need to analyze customer data for quarterly business reports"
        ),
        access_request_id=f"TEST-{int(time.time() * 1000)}",
        application_id=_settings.governance.application_id,
        access_duration="PT2H",
        resource_name="GCP - Engineering",
    )

    try:
        outcome = await agent.process(request)
    except Exception as e:
        logger.error("Test request failed", error=str(e), exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "error", "error": str(e)}
        )

    return {"status": "completed", **_summarize(outcome)}


def main():
    """Run the webhook service."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.orchestrator.host,
        port=settings.orchestrator.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
