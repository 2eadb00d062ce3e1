"""Policy evaluation engine.

Evaluates the fixed rule chain for one principal, resource and
operation. Evaluation is pure and synchronous; membership resolution
happens before it, in the access facade.
"""

from __future__ import annotations

import logging

from tenantguard.authz.models import Operation, PolicyDecision, ResourceDescriptor
from tenantguard.authz.rules import RULE_CHAIN, PolicyRule, validate_rule_chain
from tenantguard.errors import ConfigurationConflictError
from tenantguard.tenancy.models import PrincipalContext

logger = logging.getLogger(__name__)


class PolicyEvaluator:
    """Evaluates the ordered rule chain.

    Every non-terminal predicate is checked. Exactly one may match;
    two or more is a defect in the chain and raises rather than
    picking one. When none matches, the terminal rule applies.

    Usage:
        evaluator = PolicyEvaluator()
        decision = evaluator.evaluate(principal, resource, Operation.WRITE)
        if decision.allowed:
            # Proceed
        else:
            # Reject with decision.rule
    """

    def __init__(self, rules: tuple[PolicyRule, ...] = RULE_CHAIN):
        self.rules = validate_rule_chain(rules)
        self._terminal = rules[-1]

    def matching_rules(
        self,
        principal: PrincipalContext,
        resource: ResourceDescriptor,
        operation: Operation,
    ) -> list[PolicyRule]:
        """All non-terminal rules whose predicate holds, in chain order."""
        return [
            rule for rule in self.rules
            if not rule.terminal and rule.predicate(principal, resource, operation)
        ]

    def evaluate(
        self,
        principal: PrincipalContext,
        resource: ResourceDescriptor,
        operation: Operation,
    ) -> PolicyDecision:
        """Decide whether the principal may perform the operation.

        Args:
            principal: Resolved principal for the target organization
            resource: Resource being accessed
            operation: read, write or delete

        Returns:
            PolicyDecision naming the rule that fired

        Raises:
            ConfigurationConflictError: If more than one rule matched
        """
        matched = self.matching_rules(principal, resource, operation)

        if len(matched) > 1:
            rule_ids = [rule.rule_id.value for rule in matched]
            logger.critical(
                "Policy rule conflict: rules=%s subject=%s org=%s operation=%s",
                rule_ids, principal.subject_id, principal.organization_id, operation.value,
            )
            raise ConfigurationConflictError(
                f"Multiple policy rules matched: {rule_ids}", rule_ids=rule_ids
            )

        rule = matched[0] if matched else self._terminal
        logger.debug(
            "Rule matched: rule=%s allowed=%s subject=%s org=%s operation=%s",
            rule.rule_id.value, rule.allow, principal.subject_id,
            principal.organization_id, operation.value,
        )

        return PolicyDecision(
            allowed=rule.allow,
            rule=rule.rule_id,
            subject_id=principal.subject_id,
            organization_id=principal.organization_id,
            resource=resource,
            operation=operation,
            role=principal.role,
            fault=principal.fault,
        )
