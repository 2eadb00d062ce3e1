"""Authorization package.

Fixed, ordered policy rule chain deciding whether a principal may
read, write or delete a tenant-scoped resource.

Usage:
    from tenantguard.authz import PolicyEvaluator, TenantResource, Operation

    evaluator = PolicyEvaluator()
    resource = TenantResource(
        resource_type=ResourceType.SCHEDULING_RECORD,
        organization_id="org-a",
        owner_id="user-1",
    )

    decision = evaluator.evaluate(principal, resource, Operation.WRITE)
    if decision.allowed:
        # Proceed
        pass
"""

from tenantguard.authz.models import (
    DOMAIN_SENSITIVE_TYPES,
    DualTenantResource,
    Operation,
    PolicyDecision,
    PublicResource,
    ResourceDescriptor,
    ResourceType,
    RuleId,
    TenantResource,
)
from tenantguard.authz.rules import RULE_CHAIN, PolicyRule, validate_rule_chain
from tenantguard.authz.engine import PolicyEvaluator

__all__ = [
    "DOMAIN_SENSITIVE_TYPES",
    "DualTenantResource",
    "Operation",
    "PolicyDecision",
    "PublicResource",
    "ResourceDescriptor",
    "ResourceType",
    "RuleId",
    "TenantResource",
    "RULE_CHAIN",
    "PolicyRule",
    "validate_rule_chain",
    "PolicyEvaluator",
]
