"""OpenID Connect relying party client."""

from tessera.adapters.oidc.client import OIDCClient
from tessera.adapters.oidc.types import DiscoveryDocument, OIDCEndpoints, TokenResponse

__all__ = ["DiscoveryDocument", "OIDCClient", "OIDCEndpoints", "TokenResponse"]
