"""Governance backend domains.

Each adapter:
- Translates tool operations into backend calls
- Normalizes responses into shared models
- Holds no per-request state
"""

from domains.base import GovernanceAdapter, RESTAdapter
from domains.governance import (
    MOCK_BUNDLES,
    MockGovernanceAdapter,
    OktaGovernanceAdapter,
    create_governance_adapter,
)

__all__ = [
    "GovernanceAdapter",
    "RESTAdapter",
    "MOCK_BUNDLES",
    "MockGovernanceAdapter",
    "OktaGovernanceAdapter",
    "create_governance_adapter",
]
