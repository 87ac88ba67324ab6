"""Governance Domain - Okta Identity Governance adapters.

Provides the live adapter, which talks to the governance REST API, and a
mock adapter returning synthetic, deterministically shaped responses so the
executor and agent loop can run without the real backend.
"""

import asyncio
import uuid
from typing import Any, Iterable, Optional

import httpx

from shared.config import GovernanceSettings
from shared.errors import GovernanceAPIError
from shared.logging import get_logger
from shared.models import EntitlementBundle, Grant
from domains.base import GovernanceAdapter, RESTAdapter

logger = get_logger(__name__)


ENTITLEMENT_BUNDLES_PATH = "/governance/api/v1/entitlement-bundles"
GRANTS_PATH = "/governance/api/v1/grants"
REQUEST_MESSAGES_PATH = "/governance/api/v2/requests/{request_id}/messages"


# Catalog served in mock mode
MOCK_BUNDLES = [
    EntitlementBundle(
        id="enbmtw1byu10MX9wZ696",
        name="Viewer - viewer",
        description="Grants read-only access to all of a project's resources.",
        status="ACTIVE"
    ),
    EntitlementBundle(
        id="enbmtw1buZQG1bZZZ696",
        name="Storage Object Viewer - storage.objectViewer",
        description="Grants read-only access to Cloud Storage objects.",
        status="ACTIVE"
    ),
    EntitlementBundle(
        id="enbmtv1gportvxifd696",
        name="Storage Object Admin - storage.objectAdmin",
        description="Grants full control over Cloud Storage objects.",
        status="ACTIVE"
    ),
    EntitlementBundle(
        id="enbmtv1gl03rpGl0G696",
        name="BigQuery Data Editor - bigquery.dataEditor",
        description="Grants permissions to edit data and metadata in BigQuery tables.",
        status="ACTIVE"
    ),
]


class OktaGovernanceAdapter(RESTAdapter):
    """
    Live adapter for the Okta Identity Governance API.

    Every request carries the configured authorization header and
    exchanges JSON.
    """

    mode = "live"

    def __init__(
        self,
        settings: GovernanceSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        super().__init__(
            base_url=settings.base_url,
            headers=_build_headers(settings),
            timeout=settings.timeout_seconds,
            transport=transport
        )

    async def list_entitlement_bundles(self, application_id: str) -> list[EntitlementBundle]:
        logger.info("Listing entitlement bundles", application_id=application_id)

        payload = await self._request(
            "GET",
            ENTITLEMENT_BUNDLES_PATH,
            params={
                "filter": f'target.externalId eq "{application_id}" AND target.type eq "APPLICATION"'
            }
        )

        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise GovernanceAPIError(
                "Entitlement bundle listing did not contain a data array",
                body=payload
            )

        try:
            bundles = [
                EntitlementBundle(
                    id=item["id"],
                    name=item["name"],
                    description=item.get("description"),
                    status=item.get("status")
                )
                for item in payload["data"]
            ]
        except (KeyError, TypeError) as e:
            raise GovernanceAPIError(f"Malformed entitlement bundle: {e}", body=payload) from e

        logger.info("Entitlement bundles retrieved", count=len(bundles))
        return bundles

    async def create_grant(self, user_id: str, entitlement_bundle_id: str) -> Grant:
        logger.info(
            "Creating grant",
            user_id=user_id,
            entitlement_bundle_id=entitlement_bundle_id
        )

        payload = await self._request(
            "POST",
            GRANTS_PATH,
            json={
                "grantType": "ENTITLEMENT-BUNDLE",
                "entitlementBundleId": entitlement_bundle_id,
                "actor": "ACCESS_REQUEST",
                "targetPrincipal": {
                    "externalId": user_id,
                    "type": "OKTA_USER"
                }
            }
        )

        grant_id = payload.get("id") if isinstance(payload, dict) else None
        if not grant_id:
            raise GovernanceAPIError("Grant response did not include an id", body=payload)

        logger.info("Grant created", entitlement_bundle_id=entitlement_bundle_id, grant_id=grant_id)
        return Grant(entitlement_bundle_id=entitlement_bundle_id, grant_id=grant_id)

    async def add_request_message(self, request_id: str, message: str) -> dict[str, Any]:
        logger.info("Adding request message", request_id=request_id)

        payload = await self._request(
            "POST",
            REQUEST_MESSAGES_PATH.format(request_id=request_id),
            json={"message": message}
        )

        logger.info("Request message added", request_id=request_id)
        return payload if isinstance(payload, dict) else {"response": payload}


class MockGovernanceAdapter(GovernanceAdapter):
    """
    Mock adapter serving a fixed GCP catalog.

    Grant identifiers are generated per call. Bundle ids listed in
    ``failing_bundle_ids`` raise GovernanceAPIError on grant, simulating a
    backend rejection.
    """

    mode = "mock"

    def __init__(
        self,
        latency_seconds: float = 0.3,
        bundles: Optional[list[EntitlementBundle]] = None,
        failing_bundle_ids: Optional[Iterable[str]] = None
    ) -> None:
        self.latency_seconds = latency_seconds
        self.bundles = list(bundles if bundles is not None else MOCK_BUNDLES)
        self.failing_bundle_ids = set(failing_bundle_ids or ())

    async def _simulate_latency(self) -> None:
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)

    async def list_entitlement_bundles(self, application_id: str) -> list[EntitlementBundle]:
        logger.info("Simulating entitlement bundles", application_id=application_id, mode=self.mode)
        await self._simulate_latency()
        return [bundle.model_copy() for bundle in self.bundles]

    async def create_grant(self, user_id: str, entitlement_bundle_id: str) -> Grant:
        logger.info(
            "Simulating grant",
            user_id=user_id,
            entitlement_bundle_id=entitlement_bundle_id,
            mode=self.mode
        )
        await self._simulate_latency()

        if entitlement_bundle_id in self.failing_bundle_ids:
            raise GovernanceAPIError(
                f"POST {GRANTS_PATH} returned 400: entitlement bundle {entitlement_bundle_id} cannot be granted",
                status_code=400
            )

        return Grant(
            entitlement_bundle_id=entitlement_bundle_id,
            grant_id=f"grant-{uuid.uuid4().hex[:16]}"
        )

    async def add_request_message(self, request_id: str, message: str) -> dict[str, Any]:
        logger.info("Simulating request message", request_id=request_id, mode=self.mode)
        await self._simulate_latency()
        return {"requestId": request_id, "message": message}


def _build_headers(settings: GovernanceSettings) -> dict[str, str]:
    headers = {
        "Accept": "application/json",
        "Content-Type": "application/json",
    }
    if settings.api_token:
        token = settings.api_token
        # Tokens configured with their scheme are sent as-is
        if " " not in token and settings.auth_scheme:
            token = f"{settings.auth_scheme} {token}"
        headers["Authorization"] = token
    return headers


def create_governance_adapter(
    settings: GovernanceSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> GovernanceAdapter:
    """
    Create the adapter selected by ``settings.mock_mode``.

    Args:
        settings: Governance backend configuration
        transport: Optional httpx transport for the live adapter

    Returns:
        Configured governance adapter
    """
    if settings.mock_mode:
        adapter: GovernanceAdapter = MockGovernanceAdapter(
            latency_seconds=settings.mock_latency_seconds
        )
    else:
        if not settings.api_token:
            logger.warning("Governance API token is not configured")
        adapter = OktaGovernanceAdapter(settings, transport=transport)

    logger.info("Governance adapter created", mode=adapter.mode, base_url=settings.base_url)
    return adapter
