"""Webhook payload normalization.

Access request webhooks arrive with display-name keys ("Access Level
Name", "Requester's User ID", ...). This module maps them onto the
NormalizedRequest the agent consumes.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.models import NormalizedRequest


class WebhookPayload(BaseModel):
    """Inbound access request webhook body."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    access_duration: Optional[str] = Field(default=None, alias="Access Duration")
    access_level_description: Optional[str] = Field(default=None, alias="Access Level Description")
    access_level_name: Optional[str] = Field(default=None, alias="Access Level Name")
    access_scope_id: Optional[str] = Field(default=None, alias="Access Scope ID")
    catalog_entry_id: Optional[str] = Field(default=None, alias="Catalog Entry ID")
    access_request_id: Optional[str] = Field(default=None, alias="OIG Request ID")
    request_assignee_email: Optional[str] = Field(default=None, alias="Request Assignee's Email Address")
    request_subject: Optional[str] = Field(default=None, alias="Request Subject")
    requested_by: Optional[str] = Field(default=None, alias="Requested By")
    user_id: Optional[str] = Field(default=None, alias="Requester's User ID")
    user_email: Optional[str] = Field(default=None, alias="Requester's Email Address")
    resource_description: Optional[str] = Field(default=None, alias="Resource Description")
    resource_id: Optional[str] = Field(default=None, alias="Resource ID")
    resource_name: Optional[str] = Field(default=None, alias="Resource Name")
    resource_url: Optional[str] = Field(default=None, alias="Resource URL")
    justification: Optional[str] = Field(default=None, alias="Response to Justification")


def normalize_webhook(
    payload: dict[str, Any],
    default_application_id: str
) -> NormalizedRequest:
    """
    Map a webhook body onto a NormalizedRequest.

    Args:
        payload: Decoded webhook JSON
        default_application_id: Application used for entitlement discovery

    Returns:
        The normalized request

    Raises:
        ValueError: If the requester user ID or request ID is missing
    """
    webhook = WebhookPayload.model_validate(payload)

    missing = [
        alias for alias, value in (
            ("Requester's User ID", webhook.user_id),
            ("OIG Request ID", webhook.access_request_id),
        )
        if not value
    ]
    if missing:
        raise ValueError(f"Webhook is missing required fields: {', '.join(missing)}")

    return NormalizedRequest(
        requester_user_id=webhook.user_id,
        requester_email=webhook.user_email or "",
        requested_role_name=webhook.access_level_name or "",
        requested_role_description=webhook.access_level_description or "",
        catalog_entry_id=webhook.catalog_entry_id or "",
        justification_text=webhook.justification or "",
        access_request_id=webhook.access_request_id,
        application_id=default_application_id,
        access_duration=webhook.access_duration,
        resource_name=webhook.resource_name,
        resource_id=webhook.resource_id,
        requested_by=webhook.requested_by,
    )
