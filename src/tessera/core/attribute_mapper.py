"""Translate IdP claims into a canonical identity and workspace role."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from tessera.core.claims import as_string_list, resolve_path, resolve_string
from tessera.core.exceptions import MappingError
from tessera.core.types import ResolvedIdentity, SSOConfiguration

logger = structlog.get_logger()


def map_attributes(config: SSOConfiguration, raw: Mapping[str, Any]) -> ResolvedIdentity:
    """Resolve the canonical profile for a federated login.

    Role resolution starts from the configuration's JIT default role. When a
    groups path is mapped, the first group-role rule whose group appears in the
    user's groups wins. Rules are ordered and earlier rules take precedence
    regardless of privilege.

    Args:
        config: SSO configuration holding the attribute mapping and role rules.
        raw: Claims from the IdP (ID token + UserInfo, or SAML attributes).

    Returns:
        The resolved identity.

    Raises:
        MappingError: If no email can be resolved.
    """
    mapping = config.attribute_mapping

    email = resolve_string(raw, mapping.email)
    if not email or "@" not in email:
        raise MappingError(
            f"No email found at attribute path '{mapping.email}'",
            code="email_missing",
        )
    email = email.lower()

    first_name = resolve_string(raw, mapping.first_name)
    last_name = resolve_string(raw, mapping.last_name)
    name = resolve_string(raw, mapping.name)
    if not name and (first_name or last_name):
        name = " ".join(part for part in (first_name, last_name) if part)

    groups: list[str] = []
    if mapping.groups:
        groups = as_string_list(resolve_path(raw, mapping.groups))

    role = config.jit_default_role
    if groups:
        group_set = set(groups)
        for rule in config.group_role_mapping:
            if rule.idp_group in group_set:
                role = rule.role
                break

    logger.debug(
        "attributes_mapped",
        config_id=str(config.id),
        role=role.value,
        group_count=len(groups),
    )

    return ResolvedIdentity(
        email=email,
        role=role,
        name=name,
        first_name=first_name,
        last_name=last_name,
        avatar=resolve_string(raw, mapping.avatar),
        groups=tuple(groups),
    )


def email_domain(email: str) -> str:
    """Return the lower-cased domain part of an email address."""
    return email.rsplit("@", 1)[-1].strip().lower()
