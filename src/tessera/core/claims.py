"""Dot-path lookups into IdP claim documents.

Claims arrive as arbitrary JSON-like values (OIDC ID tokens and UserInfo) or as
attribute name/value pairs (SAML). Both are represented as plain dicts whose
values are ``ClaimValue``.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, TypeAlias

ClaimValue: TypeAlias = str | int | float | bool | None | list[Any] | dict[str, Any]


def resolve_path(claims: Mapping[str, Any], path: str) -> ClaimValue:
    """Resolve a dot-notation path.

    An exact key match wins over dot splitting, so attribute names that are
    themselves URIs (``http://schemas.xmlsoap.org/.../emailaddress``) resolve.

    Args:
        claims: Claim document.
        path: Dot-separated path, e.g. ``profile.email``.

    Returns:
        The value at the path, or None when any segment is missing.
    """
    if not path:
        return None
    if path in claims:
        return claims[path]

    current: Any = claims
    for segment in path.split("."):
        if isinstance(current, list):
            if not current:
                return None
            current = current[0]
        if not isinstance(current, Mapping) or segment not in current:
            return None
        current = current[segment]
    return current


def first_scalar(value: ClaimValue) -> str | None:
    """Collapse a claim value to a single string.

    Arrays resolve to their first element. Objects and empty values yield None.
    """
    if isinstance(value, list):
        if not value:
            return None
        value = value[0]
    if value is None or isinstance(value, dict | list):
        return None
    if isinstance(value, bool):
        return str(value).lower()
    text = str(value).strip()
    return text or None


def as_string_list(value: ClaimValue) -> list[str]:
    """Normalize a claim value to a list of strings.

    Strings become one-element lists; nested objects are dropped.
    """
    if value is None:
        return []
    items = value if isinstance(value, list) else [value]
    result: list[str] = []
    for item in items:
        if item is None or isinstance(item, dict | list):
            continue
        text = str(item).strip()
        if text:
            result.append(text)
    return result


def resolve_string(claims: Mapping[str, Any], path: str | None) -> str | None:
    """Resolve a path and collapse it to a string."""
    if not path:
        return None
    return first_scalar(resolve_path(claims, path))
