"""Email domain routing and SSO enforcement lookups."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID, uuid4

import structlog

from tessera.core.attribute_mapper import email_domain
from tessera.core.audit import AuditLog
from tessera.core.configuration import require_role
from tessera.core.dns_verification import (
    DEFAULT_PRODUCT,
    DEFAULT_TIMEOUT_SECONDS,
    VerificationToken,
    verify_domain_dns,
)
from tessera.core.exceptions import (
    DomainConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from tessera.core.interfaces import (
    DomainRoutingRepository,
    SSOConfigRepository,
    WorkspaceDirectory,
)
from tessera.core.types import (
    AuditEventType,
    DomainRouting,
    OrgRole,
    SSOConfiguration,
    SSOProviderType,
    VerificationMethod,
)

logger = structlog.get_logger()

DOMAIN_PATTERN = re.compile(r"^(?=.{1,253}$)([a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")


@dataclass(frozen=True)
class DomainRoutingChallenge:
    """A new routing and the DNS record proving ownership."""

    routing_id: UUID
    domain: str
    verification_token: str
    dns_record_name: str
    dns_record_value: str


@dataclass(frozen=True)
class SSORequirement:
    """Whether a login must go through SSO."""

    required: bool
    config_id: UUID | None = None
    provider: SSOProviderType | None = None
    name: str | None = None
    bypassed: bool = False


def normalize_domain(domain: str) -> str:
    """Lower-case and validate a domain.

    Raises:
        ValidationError: If the value is not a plausible domain name.
    """
    normalized = domain.strip().lower().rstrip(".")
    if not DOMAIN_PATTERN.match(normalized):
        raise ValidationError(f"Invalid domain: {domain}", code="invalid_domain")
    return normalized


class DomainRouter:
    """Maps verified email domains to SSO configurations."""

    def __init__(
        self,
        routings: DomainRoutingRepository,
        configs: SSOConfigRepository,
        directory: WorkspaceDirectory,
        audit: AuditLog,
        product: str = DEFAULT_PRODUCT,
        allow_manual_verification: bool = False,
        dns_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._routings = routings
        self._configs = configs
        self._directory = directory
        self._audit = audit
        self._product = product
        self._allow_manual = allow_manual_verification
        self._dns_timeout = dns_timeout

    async def add_routing(self, config_id: UUID, domain: str, actor_id: UUID) -> DomainRoutingChallenge:
        """Claim a domain for a configuration and issue a DNS challenge.

        The uniqueness check and insert are one atomic repository call.

        Raises:
            NotFoundError: If the configuration does not exist.
            DomainConflictError: If the domain is already routed anywhere.
        """
        config = await self._configs.get(config_id)
        if config is None:
            raise NotFoundError(f"SSO configuration not found: {config_id}")
        await require_role(
            self._directory, config.workspace_id, actor_id, OrgRole.ADMIN, "manage domain routing"
        )

        normalized = normalize_domain(domain)
        challenge = VerificationToken.generate(normalized, self._product)
        routing = DomainRouting(
            id=uuid4(),
            domain=normalized,
            workspace_id=config.workspace_id,
            config_id=config.id,
            verification_token=challenge.token,
            created_at=datetime.now(UTC),
        )
        stored = await self._routings.claim(routing)
        if stored is None:
            logger.warning("domain_routing_conflict", domain=normalized, config_id=str(config_id))
            raise DomainConflictError(normalized)

        logger.info("domain_routing_added", domain=normalized, config_id=str(config_id))
        return DomainRoutingChallenge(
            routing_id=stored.id,
            domain=normalized,
            verification_token=challenge.token,
            dns_record_name=challenge.dns_record,
            dns_record_value=challenge.dns_value,
        )

    async def verify_domain(
        self,
        routing_id: UUID,
        actor_id: UUID,
        *,
        manual: bool = False,
    ) -> DomainRouting:
        """Verify ownership of a routed domain.

        Performs a DNS TXT lookup. Manual attestation is only accepted when
        explicitly allowed for the deployment.

        Raises:
            NotFoundError: If the routing does not exist.
            PermissionDeniedError: If manual verification is not allowed.
            ValidationError: If the DNS record is not found.
        """
        routing = await self._routings.get(routing_id)
        if routing is None:
            raise NotFoundError(f"Domain routing not found: {routing_id}")
        await require_role(self._directory, routing.workspace_id, actor_id, OrgRole.ADMIN, "verify domains")

        if routing.verified:
            return routing

        if manual:
            if not self._allow_manual:
                raise PermissionDeniedError("Manual domain verification is disabled")
            method = VerificationMethod.MANUAL
        else:
            method = VerificationMethod.DNS_TXT
            found = await verify_domain_dns(
                routing.domain,
                routing.verification_token,
                product=self._product,
                timeout=self._dns_timeout,
            )
            if not found:
                error = ValidationError(
                    f"Verification record not found for {routing.domain}",
                    code="domain_verification_failed",
                    details={"domain": routing.domain},
                )
                await self._audit.record_failure(
                    AuditEventType.DOMAIN_VERIFICATION_FAILED,
                    error,
                    workspace_id=routing.workspace_id,
                    config_id=routing.config_id,
                    user_id=actor_id,
                )
                raise error

        verified = await self._routings.mark_verified(routing.id, method, datetime.now(UTC))
        if verified is None:
            raise NotFoundError(f"Domain routing not found: {routing_id}")
        await self._audit.record(
            AuditEventType.DOMAIN_VERIFIED,
            workspace_id=routing.workspace_id,
            config_id=routing.config_id,
            user_id=actor_id,
            metadata={"domain": routing.domain, "method": method.value},
        )
        return verified

    async def remove_routing(self, routing_id: UUID, actor_id: UUID) -> None:
        """Delete a domain routing (admin only)."""
        routing = await self._routings.get(routing_id)
        if routing is None:
            raise NotFoundError(f"Domain routing not found: {routing_id}")
        await require_role(
            self._directory, routing.workspace_id, actor_id, OrgRole.ADMIN, "manage domain routing"
        )
        await self._routings.delete(routing_id)
        logger.info("domain_routing_removed", domain=routing.domain)

    async def list_routings(self, workspace_id: UUID, actor_id: UUID) -> list[DomainRouting]:
        """List a workspace's domain routings (admin only)."""
        await require_role(self._directory, workspace_id, actor_id, OrgRole.ADMIN, "view domain routings")
        return await self._routings.list_for_workspace(workspace_id)

    async def check_sso_required(self, identifier: str, user_id: UUID | None = None) -> SSORequirement:
        """Check whether a workspace slug or email requires SSO.

        Emails (and bare domains) resolve through verified domain routings;
        anything else is looked up as a workspace slug. Only enabled
        configurations with ``enforce_sso`` count.

        Args:
            identifier: Workspace slug, email address, or email domain.
            user_id: Acting user, for the owner bypass.

        Returns:
            The requirement decision.
        """
        identifier = identifier.strip()
        config: SSOConfiguration | None = None

        if "@" in identifier:
            config = await self._config_for_domain(email_domain(identifier))
        else:
            workspace = await self._directory.get_workspace_by_slug(identifier)
            if workspace is not None:
                for candidate in await self._configs.list_for_workspace(workspace.id):
                    if candidate.enabled and candidate.enforce_sso:
                        config = candidate
                        break
            elif "." in identifier:
                config = await self._config_for_domain(identifier.lower())

        if config is None:
            return SSORequirement(required=False)

        if user_id is not None and config.allow_bypass_for_owner:
            workspace = await self._directory.get_workspace(config.workspace_id)
            if workspace is not None and workspace.owner_id == user_id:
                logger.info("sso_owner_bypass", config_id=str(config.id))
                return SSORequirement(
                    required=False,
                    config_id=config.id,
                    provider=config.provider_type,
                    name=config.name,
                    bypassed=True,
                )

        return SSORequirement(
            required=True,
            config_id=config.id,
            provider=config.provider_type,
            name=config.name,
        )

    async def _config_for_domain(self, domain: str) -> SSOConfiguration | None:
        routing = await self._routings.get_by_domain(domain)
        if routing is None or not routing.verified:
            return None
        config = await self._configs.get(routing.config_id)
        if config is None or not (config.enabled and config.enforce_sso):
            return None
        return config
