"""Principal context resolution.

Pure read: given a verified subject id and a target organization,
resolve the active membership and role. ``not a member`` is a normal
result; storage faults are raised as ``StorageUnavailableError`` so
they can never be mistaken for a membership answer.
"""

from __future__ import annotations

import asyncio
import logging

from tenantguard.errors import StorageUnavailableError, require_identifier
from tenantguard.tenancy.models import (
    MembershipResolution,
    MembershipStatus,
    PrincipalContext,
)
from tenantguard.tenancy.storage import TenancyStorage

logger = logging.getLogger(__name__)


class PrincipalContextResolver:
    """Resolves memberships against the tenancy store.

    Holds no per-request state, so one instance may be shared across
    any number of concurrent callers.
    """

    def __init__(self, storage: TenancyStorage, default_timeout: float | None = None):
        self.storage = storage
        self.default_timeout = default_timeout

    async def _lookup(self, subject_id: str, organization_id: str) -> MembershipResolution:
        membership = await self.storage.get_membership(subject_id, organization_id)
        if membership is None:
            return MembershipResolution.not_a_member(subject_id, organization_id)

        status = membership.status
        organization = await self.storage.get_organization(organization_id)
        if organization is not None and not organization.is_active:
            # A suspended or deleted tenant grants nothing to anyone
            status = MembershipStatus.SUSPENDED

        return MembershipResolution(
            subject_id=subject_id,
            organization_id=organization_id,
            role=membership.role,
            status=status,
        )

    async def resolve(
        self,
        subject_id: str,
        organization_id: str,
        timeout: float | None = None,
    ) -> MembershipResolution:
        """Resolve a subject's membership in one organization.

        Args:
            subject_id: Verified principal identifier
            organization_id: Target organization identifier
            timeout: Deadline in seconds (default: resolver default)

        Returns:
            MembershipResolution; ``is_member`` is False for non-members

        Raises:
            InvalidIdentifierError: If either identifier is empty
            StorageUnavailableError: If the store fails or the deadline passes
        """
        require_identifier(subject_id, "subject_id")
        require_identifier(organization_id, "organization_id")

        deadline = timeout if timeout is not None else self.default_timeout
        try:
            return await asyncio.wait_for(
                self._lookup(subject_id, organization_id), timeout=deadline
            )
        except TimeoutError as exc:
            logger.error(
                "Membership resolution timed out after %ss: subject=%s org=%s",
                deadline, subject_id, organization_id,
            )
            raise StorageUnavailableError("resolve", f"timed out after {deadline}s") from exc
        except StorageUnavailableError:
            raise
        except Exception as exc:
            logger.error(
                "Membership resolution failed: subject=%s org=%s error=%s",
                subject_id, organization_id, exc,
            )
            raise StorageUnavailableError("resolve", str(exc)) from exc

    async def resolve_context(
        self,
        subject_id: str,
        organization_id: str,
        timeout: float | None = None,
    ) -> PrincipalContext:
        """Resolve into a PrincipalContext for policy evaluation."""
        resolution = await self.resolve(subject_id, organization_id, timeout=timeout)
        return PrincipalContext.from_resolution(resolution)
