"""SAML 2.0 service provider codec."""

from tessera.adapters.saml.codec import SAMLCodec
from tessera.adapters.saml.types import SAMLAssertion, SAMLParseResult, SPEndpoints

__all__ = ["SAMLAssertion", "SAMLCodec", "SAMLParseResult", "SPEndpoints"]
