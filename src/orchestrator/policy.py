"""Access policy given to the decision model.

The policy is a versioned natural-language instruction. The agent loop
treats it as an opaque input: a NormalizedRequest goes in, and the tool
activity it produces is read back as a PolicyDecision.
"""

from string import Template
from typing import Iterable

from shared.models import (
    DecisionAction,
    NormalizedRequest,
    PolicyDecision,
    ToolInvocation,
)
from mcp_server.registry import CREATE_GRANT

POLICY_VERSION = "2024-06-gcp-least-privilege"

DEFAULT_POLICY_TEMPLATE = """You are a SENIOR SECURITY ENGINEER evaluating access requests for Google Cloud Project (GCP) roles to a production environment from engineers at an enterprise company. You must make decisions that enforce least privilege but also ensure business continuity.

REQUIREMENTS:
1. Justifications within the request must contain meaningful information including:
    a. Incident/Reference number OR explicit statement this is routine/planned work
    b. Specific GCP resource types (storage, bigquery, kubernetes, logs, compute, vertex-ai, etc.)
    c. Clear description of planned actions with those resources
2. NEVER grant admin roles unless the justification explicitly mentions admin tasks such as, but not limited to, "create", "delete", "configure", "manage infrastructure"
3. Do not generate values for userId or requestId
4. When calling add_request_message, you MUST use requestId: "$access_request_id"
5. When calling create_grant, you MUST use userId: "$requester_user_id"
6. When calling list_entitlement_bundles, use applicationId: "$application_id"

CURRENT REQUEST ANALYSIS:
- User Email: $requester_email
- userId: $requester_user_id
- GCP role name: "$requested_role_name"
- GCP role description: "$requested_role_description"
- Catalog Entry ID: $catalog_entry_id
- Justification: "$justification_text"

MANDATORY WORKFLOW:
1. Determine if the justification includes the required information (incident number/info, GCP resources, intent with GCP resources). If it does not, stop processing and send a message explaining that the justification does not contain enough information
2. If the justification contains the necessary information, call list_entitlement_bundles to see all available roles and descriptions from the catalog
3. Compare the description of the role requested against the justification the user provided
    a. If the requested role and role description align with the justification, grant the role
    b. If the requested role is over-permissive (for example an admin role) but there is no clear justification (no mention of modifying the system via update, delete, configure, etc.), grant a less permissive entitlement based on the resources included in the justification. Only grant a single bundle which directly maps to GCP resources mentioned explicitly in the justification
4. Call add_request_message with details of which roles were granted and why, and why the original role was not granted if it was not
5. Only grant bundles for GCP resources EXPLICITLY MENTIONED in the justification. For example, only grant Vertex bundles when the justification mentions AI or machine learning, grant BigQuery when the justification includes terms like database, grant Storage entitlements when files or cloud storage are mentioned

Remember: Your job is to enable legitimate work while minimizing access to unnecessary permissions and enforcing the principle of least privilege"""


class AccessPolicy:
    """
    A versioned decision policy.

    Args:
        version: Identifier recorded on every outcome
        template: ``string.Template`` text; placeholders are
            NormalizedRequest field names
    """

    def __init__(
        self,
        version: str = POLICY_VERSION,
        template: str = DEFAULT_POLICY_TEMPLATE
    ) -> None:
        self.version = version
        self._template = Template(template)

    def build_instruction(self, request: NormalizedRequest) -> str:
        """Render the system instruction for one request."""
        return self._template.safe_substitute(request.model_dump(mode="json"))

    def derive_decision(
        self,
        invocations: Iterable[ToolInvocation],
        final_message: str
    ) -> PolicyDecision:
        """
        Read the decision back from the tool activity of a finished loop.

        No created grant is a deny; grants with no failed attempt are a
        grant; created and failed grants together are partial.
        """
        granted: list[str] = []
        failed = False

        for invocation in invocations:
            if invocation.tool_name != CREATE_GRANT:
                continue

            result = invocation.result
            if result.success:
                granted.extend(g["entitlementBundleId"] for g in result.data or [])
                continue

            failed = True
            for attempt in result.details or []:
                if attempt.get("status") == "created":
                    granted.append(attempt["entitlementBundleId"])

        if not granted:
            action = DecisionAction.DENY
        elif failed:
            action = DecisionAction.PARTIAL
        else:
            action = DecisionAction.GRANT

        return PolicyDecision(
            action=action,
            chosen_bundle_ids=granted,
            rationale=final_message
        )
