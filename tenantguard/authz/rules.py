"""The fixed, ordered policy rule chain.

The chain is an immutable tuple built at import time. Rule order is
part of the contract and cannot change at runtime:

    1. public-read              allow
    2. no-membership            deny
       dual-tenant-read         allow   (secondary organization, read)
       dual-tenant-owner-write  allow   (secondary organization, owner-side write)
    3. member-read              allow
    4. admin-write              allow
    5. self-write               allow
    6. insufficient-role        deny    (terminal)

Predicates are mutually exclusive; when ``admin-write`` and ownership
both hold, ``admin-write`` is the rule that applies.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from tenantguard.authz.models import (
    DualTenantResource,
    Operation,
    PublicResource,
    ResourceDescriptor,
    RuleId,
)
from tenantguard.errors import ConfigurationConflictError
from tenantguard.tenancy.models import ADMIN_ROLES, PrincipalContext

Predicate = Callable[[PrincipalContext, ResourceDescriptor, Operation], bool]


@dataclass(frozen=True)
class PolicyRule:
    """One predicate/effect pair in the chain."""

    rule_id: RuleId
    allow: bool
    predicate: Predicate
    terminal: bool = False

    def matches(
        self,
        principal: PrincipalContext,
        resource: ResourceDescriptor,
        operation: Operation,
    ) -> bool:
        return self.terminal or self.predicate(principal, resource, operation)


def _targets_primary(principal: PrincipalContext, resource: ResourceDescriptor) -> bool:
    return (
        not isinstance(resource, PublicResource)
        and principal.organization_id == resource.organization_id
    )


def _targets_secondary(principal: PrincipalContext, resource: ResourceDescriptor) -> bool:
    return (
        isinstance(resource, DualTenantResource)
        and principal.organization_id == resource.secondary_organization_id
    )


def _is_owner(principal: PrincipalContext, resource: ResourceDescriptor) -> bool:
    owner_id = getattr(resource, "owner_id", None)
    return owner_id is not None and owner_id == principal.subject_id


def public_read(principal, resource, operation) -> bool:
    return isinstance(resource, PublicResource) and operation == Operation.READ


def dual_tenant_read(principal, resource, operation) -> bool:
    return (
        _targets_secondary(principal, resource)
        and principal.has_active_membership
        and operation == Operation.READ
    )


def dual_tenant_owner_write(principal, resource, operation) -> bool:
    return (
        _targets_secondary(principal, resource)
        and principal.has_active_membership
        and operation.is_mutation
        and _is_owner(principal, resource)
    )


def no_membership(principal, resource, operation) -> bool:
    # Public writes fall here: there is no organization to be a member of
    if isinstance(resource, PublicResource):
        return operation.is_mutation
    if principal.organization_id not in resource.organizations:
        return True
    if not principal.has_active_membership:
        return True
    if _targets_secondary(principal, resource):
        return not (
            dual_tenant_read(principal, resource, operation)
            or dual_tenant_owner_write(principal, resource, operation)
        )
    return False


def member_read(principal, resource, operation) -> bool:
    return (
        _targets_primary(principal, resource)
        and principal.has_active_membership
        and operation == Operation.READ
    )


def admin_write(principal, resource, operation) -> bool:
    return (
        _targets_primary(principal, resource)
        and principal.has_active_membership
        and operation.is_mutation
        and principal.role in ADMIN_ROLES
    )


def self_write(principal, resource, operation) -> bool:
    return (
        _targets_primary(principal, resource)
        and principal.has_active_membership
        and operation.is_mutation
        and principal.role not in ADMIN_ROLES
        and _is_owner(principal, resource)
    )


def _never(principal, resource, operation) -> bool:
    return False


RULE_CHAIN: tuple[PolicyRule, ...] = (
    PolicyRule(RuleId.PUBLIC_READ, allow=True, predicate=public_read),
    PolicyRule(RuleId.NO_MEMBERSHIP, allow=False, predicate=no_membership),
    PolicyRule(RuleId.DUAL_TENANT_READ, allow=True, predicate=dual_tenant_read),
    PolicyRule(RuleId.DUAL_TENANT_OWNER_WRITE, allow=True, predicate=dual_tenant_owner_write),
    PolicyRule(RuleId.MEMBER_READ, allow=True, predicate=member_read),
    PolicyRule(RuleId.ADMIN_WRITE, allow=True, predicate=admin_write),
    PolicyRule(RuleId.SELF_WRITE, allow=True, predicate=self_write),
    PolicyRule(RuleId.INSUFFICIENT_ROLE, allow=False, predicate=_never, terminal=True),
)


def validate_rule_chain(rules: tuple[PolicyRule, ...]) -> tuple[PolicyRule, ...]:
    """Reject malformed chains.

    Raises:
        ConfigurationConflictError: On duplicate rule ids, or when the
            chain does not end in exactly one terminal deny rule
    """
    if not isinstance(rules, tuple):
        raise ConfigurationConflictError("Rule chain must be an immutable tuple")

    ids = [rule.rule_id for rule in rules]
    duplicates = sorted({r.value for r in ids if ids.count(r) > 1})
    if duplicates:
        raise ConfigurationConflictError(
            f"Duplicate rule ids in chain: {duplicates}", rule_ids=duplicates
        )

    terminals = [rule for rule in rules if rule.terminal]
    if len(terminals) != 1 or rules[-1] is not terminals[0]:
        raise ConfigurationConflictError("Rule chain must end in exactly one terminal rule")
    if terminals[0].allow:
        raise ConfigurationConflictError(
            "Terminal rule must deny", rule_ids=[terminals[0].rule_id.value]
        )
    return rules


validate_rule_chain(RULE_CHAIN)
