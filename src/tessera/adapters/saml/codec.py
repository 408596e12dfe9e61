"""SAML 2.0 service provider codec.

Builds AuthnRequest/LogoutRequest/LogoutResponse messages for the
HTTP-Redirect binding, parses Responses and LogoutRequests received from the
IdP, validates assertion conditions and XML signatures, and renders SP
metadata.

Untrusted XML is screened with defusedxml (no DTDs, no entities) before lxml
parses it with entity resolution and network access disabled. Signature
cryptography is delegated to signxml.
"""

from __future__ import annotations

import base64
import binascii
import re
import textwrap
import zlib
from datetime import UTC, datetime, timedelta
from urllib.parse import quote, unquote_plus

import defusedxml.ElementTree
import structlog
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from defusedxml.common import DefusedXmlException
from lxml import etree
from signxml import XMLVerifier
from signxml.exceptions import SignXMLException

from tessera.adapters.saml.types import (
    BINDING_HTTP_POST,
    BINDING_HTTP_REDIRECT,
    NAMEID_EMAIL,
    NAMEID_PERSISTENT,
    NAMESPACES,
    NS_DS,
    NS_MD,
    NS_SAML,
    NS_SAMLP,
    SIG_ALG_RSA_SHA256,
    SIG_ALG_RSA_SHA512,
    STATUS_REQUESTER,
    STATUS_SUCCESS,
    ExtractedAttributes,
    LogoutRequestInfo,
    LogoutResponseInfo,
    SAMLAssertion,
    SAMLParseResult,
    SAMLRedirect,
    SPEndpoints,
)
from tessera.core.crypto import generate_saml_id
from tessera.core.exceptions import ConfigurationError
from tessera.core.types import DEFAULT_NAME_ID_FORMAT, SSOConfiguration, ValidationResult

logger = structlog.get_logger()

DEFAULT_CLOCK_SKEW = timedelta(minutes=5)
XML_LANG = "{http://www.w3.org/XML/1998/namespace}lang"

EMAIL_KEYS = (
    "email",
    "Email",
    "mail",
    "emailAddress",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress",
    "urn:oid:0.9.2342.19200300.100.1.3",
)
NAME_KEYS = (
    "name",
    "displayName",
    "cn",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/name",
    "urn:oid:2.16.840.1.113730.3.1.241",
)
FIRST_NAME_KEYS = (
    "firstName",
    "givenName",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/givenname",
    "urn:oid:2.5.4.42",
)
LAST_NAME_KEYS = (
    "lastName",
    "surname",
    "sn",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/surname",
    "urn:oid:2.5.4.4",
)
GROUP_KEYS = (
    "groups",
    "memberOf",
    "http://schemas.microsoft.com/ws/2008/06/identity/claims/groups",
    "http://schemas.xmlsoap.org/claims/Group",
)

_FRACTION = re.compile(r"\.(\d+)")
_REDIRECT_DIGESTS: dict[str, hashes.HashAlgorithm] = {
    SIG_ALG_RSA_SHA256: hashes.SHA256(),
    SIG_ALG_RSA_SHA512: hashes.SHA512(),
}


class SAMLXMLError(ValueError):
    """Untrusted SAML XML could not be decoded or parsed safely."""


def _safe_parser() -> etree.XMLParser:
    return etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        remove_comments=True,
        huge_tree=False,
    )


def parse_xml(xml: bytes) -> etree._Element:
    """Parse untrusted XML.

    Raises:
        SAMLXMLError: If the document is malformed or uses DTDs/entities.
    """
    try:
        defusedxml.ElementTree.fromstring(xml, forbid_dtd=True)
        return etree.fromstring(xml, _safe_parser())
    except (DefusedXmlException, defusedxml.ElementTree.ParseError, etree.XMLSyntaxError) as e:
        raise SAMLXMLError(f"Invalid XML: {e}") from e


def decode_base64(data: str) -> bytes:
    """Decode standard base64, tolerating whitespace and missing padding.

    Raises:
        SAMLXMLError: If the data is not base64.
    """
    cleaned = "".join(data.split())
    cleaned += "=" * (-len(cleaned) % 4)
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        raise SAMLXMLError(f"Invalid base64 encoding: {e}") from e


def deflate_and_encode(xml: str) -> str:
    """Raw-deflate and base64-encode a message for the redirect binding."""
    compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
    deflated = compressor.compress(xml.encode("utf-8")) + compressor.flush()
    return base64.b64encode(deflated).decode("ascii")


def decode_and_inflate(data: str) -> bytes:
    """Reverse ``deflate_and_encode``.

    Raises:
        SAMLXMLError: If the data is not base64 or not raw-deflated.
    """
    raw = decode_base64(data)
    try:
        return zlib.decompress(raw, -15)
    except zlib.error as e:
        raise SAMLXMLError(f"Invalid deflate encoding: {e}") from e


def normalize_certificate(certificate: str) -> str:
    """Return a PEM certificate, wrapping bare base64 bodies as needed."""
    body = re.sub(r"-----(BEGIN|END) CERTIFICATE-----", "", certificate)
    body = "".join(body.split())
    lines = "\n".join(textwrap.wrap(body, 64))
    return f"-----BEGIN CERTIFICATE-----\n{lines}\n-----END CERTIFICATE-----\n"


def parse_instant(value: str | None) -> datetime | None:
    """Parse an xs:dateTime into an aware UTC datetime.

    Fractional seconds beyond microseconds are truncated.
    """
    if not value:
        return None
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_instant(value: datetime) -> str:
    """Format a datetime as a SAML instant (UTC, second precision)."""
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _text(element: etree._Element | None) -> str | None:
    if element is None or element.text is None:
        return None
    return element.text.strip() or None


def _local_name(element: etree._Element) -> str:
    return etree.QName(element).localname


def _q(namespace: str, tag: str) -> str:
    return f"{{{namespace}}}{tag}"


def _serialize(element: etree._Element) -> str:
    return etree.tostring(element, xml_declaration=True, encoding="UTF-8").decode("utf-8")


class SAMLCodec:
    """SAML 2.0 message codec for one SP deployment.

    Attributes:
        base_url: Public base URL the SP endpoints hang off.
    """

    def __init__(
        self,
        base_url: str,
        organization_name: str = "Tessera",
        organization_display_name: str | None = None,
        organization_url: str | None = None,
        sp_private_key: str | None = None,
        sp_certificate: str | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._org_name = organization_name
        self._org_display_name = organization_display_name or organization_name
        self._org_url = organization_url or self.base_url
        self._sp_key = sp_private_key
        self._sp_certificate = sp_certificate

    # ------------------------------------------------------------------ #
    # SP identity
    # ------------------------------------------------------------------ #

    def sp_endpoints(self, config: SSOConfiguration, workspace_slug: str) -> SPEndpoints:
        """SP entity ID, ACS and SLO URLs for a configuration."""
        return SPEndpoints(
            entity_id=f"{self.base_url}/saml/sp/{workspace_slug}",
            acs_url=f"{self.base_url}/auth/sso/saml/acs",
            slo_url=f"{self.base_url}/auth/sso/saml/slo/{config.id}",
        )

    # ------------------------------------------------------------------ #
    # Outbound messages
    # ------------------------------------------------------------------ #

    def build_authn_request(
        self,
        config: SSOConfiguration,
        workspace_slug: str,
        request_id: str | None = None,
        relay_state: str | None = None,
        now: datetime | None = None,
    ) -> SAMLRedirect:
        """Build an AuthnRequest for the HTTP-Redirect binding.

        Args:
            config: SAML configuration.
            workspace_slug: Slug identifying the SP entity.
            request_id: Message ID; a fresh one is generated when omitted.
            relay_state: Opaque value the IdP echoes back.
            now: Issue instant override.

        Returns:
            The XML, its ID and the full redirect URL.

        Raises:
            ConfigurationError: If the IdP SSO URL is missing.
        """
        if not config.saml_sso_url:
            raise ConfigurationError("SAML SSO URL is not configured")
        endpoints = self.sp_endpoints(config, workspace_slug)
        request_id = request_id or generate_saml_id()

        root = etree.Element(
            _q(NS_SAMLP, "AuthnRequest"),
            nsmap={"samlp": NS_SAMLP, "saml": NS_SAML},
        )
        root.set("ID", request_id)
        root.set("Version", "2.0")
        root.set("IssueInstant", format_instant(now or datetime.now(UTC)))
        root.set("Destination", config.saml_sso_url)
        root.set("AssertionConsumerServiceURL", endpoints.acs_url)
        root.set("ProtocolBinding", BINDING_HTTP_POST)
        etree.SubElement(root, _q(NS_SAML, "Issuer")).text = endpoints.entity_id
        policy = etree.SubElement(root, _q(NS_SAMLP, "NameIDPolicy"))
        policy.set("Format", config.saml_name_id_format or DEFAULT_NAME_ID_FORMAT)
        policy.set("AllowCreate", "true")

        xml = _serialize(root)
        url = self._redirect_url(config, config.saml_sso_url, "SAMLRequest", xml, relay_state)
        logger.info("saml_authn_request_built", config_id=str(config.id), request_id=request_id)
        return SAMLRedirect(xml=xml, id=request_id, redirect_url=url)

    def build_logout_request(
        self,
        config: SSOConfiguration,
        workspace_slug: str,
        name_id: str,
        session_index: str | None = None,
        relay_state: str | None = None,
        request_id: str | None = None,
        now: datetime | None = None,
    ) -> SAMLRedirect:
        """Build an SP-initiated LogoutRequest for the HTTP-Redirect binding.

        Raises:
            ConfigurationError: If the IdP SLO URL is missing.
        """
        if not config.saml_slo_url:
            raise ConfigurationError("SAML SLO URL is not configured")
        endpoints = self.sp_endpoints(config, workspace_slug)
        request_id = request_id or generate_saml_id()

        root = etree.Element(
            _q(NS_SAMLP, "LogoutRequest"),
            nsmap={"samlp": NS_SAMLP, "saml": NS_SAML},
        )
        root.set("ID", request_id)
        root.set("Version", "2.0")
        root.set("IssueInstant", format_instant(now or datetime.now(UTC)))
        root.set("Destination", config.saml_slo_url)
        etree.SubElement(root, _q(NS_SAML, "Issuer")).text = endpoints.entity_id
        name_id_el = etree.SubElement(root, _q(NS_SAML, "NameID"))
        name_id_el.text = name_id
        if config.saml_name_id_format:
            name_id_el.set("Format", config.saml_name_id_format)
        if session_index:
            etree.SubElement(root, _q(NS_SAMLP, "SessionIndex")).text = session_index

        xml = _serialize(root)
        url = self._redirect_url(config, config.saml_slo_url, "SAMLRequest", xml, relay_state)
        return SAMLRedirect(xml=xml, id=request_id, redirect_url=url)

    def build_logout_response(
        self,
        config: SSOConfiguration,
        workspace_slug: str,
        in_response_to: str,
        success: bool = True,
        relay_state: str | None = None,
        now: datetime | None = None,
    ) -> SAMLRedirect:
        """Build a LogoutResponse answering an IdP-initiated LogoutRequest.

        Raises:
            ConfigurationError: If the IdP SLO URL is missing.
        """
        if not config.saml_slo_url:
            raise ConfigurationError("SAML SLO URL is not configured")
        endpoints = self.sp_endpoints(config, workspace_slug)
        response_id = generate_saml_id()

        root = etree.Element(
            _q(NS_SAMLP, "LogoutResponse"),
            nsmap={"samlp": NS_SAMLP, "saml": NS_SAML},
        )
        root.set("ID", response_id)
        root.set("Version", "2.0")
        root.set("IssueInstant", format_instant(now or datetime.now(UTC)))
        root.set("Destination", config.saml_slo_url)
        root.set("InResponseTo", in_response_to)
        etree.SubElement(root, _q(NS_SAML, "Issuer")).text = endpoints.entity_id
        status = etree.SubElement(root, _q(NS_SAMLP, "Status"))
        code = etree.SubElement(status, _q(NS_SAMLP, "StatusCode"))
        code.set("Value", STATUS_SUCCESS if success else STATUS_REQUESTER)

        xml = _serialize(root)
        url = self._redirect_url(config, config.saml_slo_url, "SAMLResponse", xml, relay_state)
        return SAMLRedirect(xml=xml, id=response_id, redirect_url=url)

    def _redirect_url(
        self,
        config: SSOConfiguration,
        destination: str,
        param: str,
        xml: str,
        relay_state: str | None,
    ) -> str:
        parts = [f"{param}={quote(deflate_and_encode(xml), safe='')}"]
        if relay_state:
            parts.append(f"RelayState={quote(relay_state, safe='')}")

        if config.saml_sign_requests and self._sp_key:
            sig_alg = SIG_ALG_RSA_SHA512 if config.saml_signature_algorithm == "sha512" else SIG_ALG_RSA_SHA256
            parts.append(f"SigAlg={quote(sig_alg, safe='')}")
            signature = self._sign("&".join(parts).encode("utf-8"), sig_alg)
            parts.append(f"Signature={quote(signature, safe='')}")

        separator = "&" if "?" in destination else "?"
        return f"{destination}{separator}{'&'.join(parts)}"

    def _sign(self, data: bytes, sig_alg: str) -> str:
        key = serialization.load_pem_private_key(self._sp_key.encode("utf-8"), password=None)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ConfigurationError("SP signing key must be an RSA private key")
        digest = hashes.SHA512() if sig_alg == SIG_ALG_RSA_SHA512 else hashes.SHA256()
        signature = key.sign(data, padding.PKCS1v15(), digest)
        return base64.b64encode(signature).decode("ascii")

    # ------------------------------------------------------------------ #
    # Inbound messages
    # ------------------------------------------------------------------ #

    def parse_response(self, encoded: str) -> SAMLParseResult:
        """Decode and parse a base64 SAML Response from the POST binding.

        Never raises: malformed input, a non-success status and a missing
        assertion each produce a distinct failed result.
        """
        try:
            raw = decode_base64(encoded)
            root = parse_xml(raw)
        except SAMLXMLError as e:
            return SAMLParseResult(success=False, error=f"Invalid SAML response: {e}", code="invalid_response")

        if root.tag != _q(NS_SAMLP, "Response"):
            return SAMLParseResult(
                success=False,
                error=f"Unexpected SAML message: {_local_name(root)}",
                code="invalid_response",
            )

        status_el = root.find("samlp:Status/samlp:StatusCode", NAMESPACES)
        status = status_el.get("Value") if status_el is not None else None
        if status and status != STATUS_SUCCESS:
            sub_status = root.find("samlp:Status/samlp:StatusCode/samlp:StatusCode", NAMESPACES)
            message = _text(root.find("samlp:Status/samlp:StatusMessage", NAMESPACES))
            detail = status
            if sub_status is not None and sub_status.get("Value"):
                detail = f"{status} / {sub_status.get('Value')}"
            error = f"SAML authentication failed: {detail}"
            if message:
                error = f"{error} ({message})"
            return SAMLParseResult(success=False, error=error, code="saml_status")

        assertions = root.findall("saml:Assertion", NAMESPACES)
        if not assertions:
            if root.find("saml:EncryptedAssertion", NAMESPACES) is not None:
                return SAMLParseResult(
                    success=False,
                    error="Encrypted assertions are not supported",
                    code="invalid_response",
                )
            return SAMLParseResult(
                success=False,
                error="No assertion found in SAML response",
                code="invalid_response",
            )
        if len(assertions) > 1:
            return SAMLParseResult(
                success=False,
                error="SAML response contains more than one assertion",
                code="invalid_response",
            )

        try:
            assertion = self._read_assertion(root, assertions[0])
        except ValueError as e:
            return SAMLParseResult(success=False, error=f"Invalid SAML assertion: {e}", code="invalid_response")
        return SAMLParseResult(success=True, assertion=assertion, raw_xml=raw)

    def _read_assertion(self, response: etree._Element, element: etree._Element) -> SAMLAssertion:
        name_id_el = element.find("saml:Subject/saml:NameID", NAMESPACES)
        authn = element.find("saml:AuthnStatement", NAMESPACES)
        conditions = element.find("saml:Conditions", NAMESPACES)

        attributes: dict[str, str | list[str]] = {}
        for attr in element.findall("saml:AttributeStatement/saml:Attribute", NAMESPACES):
            name = attr.get("Name") or ""
            values = [(v.text or "").strip() for v in attr.findall("saml:AttributeValue", NAMESPACES)]
            if not name or not values:
                continue
            attributes[name] = values[0] if len(values) == 1 else values

        return SAMLAssertion(
            issuer=_text(element.find("saml:Issuer", NAMESPACES))
            or _text(response.find("saml:Issuer", NAMESPACES))
            or "",
            name_id=_text(name_id_el) or "",
            name_id_format=name_id_el.get("Format", "") if name_id_el is not None else "",
            session_index=authn.get("SessionIndex") if authn is not None else None,
            not_before=parse_instant(conditions.get("NotBefore")) if conditions is not None else None,
            not_on_or_after=parse_instant(conditions.get("NotOnOrAfter")) if conditions is not None else None,
            audiences=[
                a.text.strip()
                for a in element.findall("saml:Conditions/saml:AudienceRestriction/saml:Audience", NAMESPACES)
                if a.text and a.text.strip()
            ],
            attributes=attributes,
            assertion_id=element.get("ID"),
            response_id=response.get("ID"),
            in_response_to=response.get("InResponseTo"),
        )

    def parse_logout_request(self, encoded: str, deflated: bool = True) -> LogoutRequestInfo:
        """Parse an IdP-initiated LogoutRequest.

        Args:
            encoded: ``SAMLRequest`` value (already URL-decoded).
            deflated: True for the redirect binding. Payloads that turn out not
                to be deflated are read as plain base64.
        """
        try:
            xml = self.decode_message(encoded, deflated)
            root = parse_xml(xml)
        except SAMLXMLError as e:
            return LogoutRequestInfo(success=False, error=f"Invalid LogoutRequest: {e}")

        if root.tag != _q(NS_SAMLP, "LogoutRequest"):
            return LogoutRequestInfo(success=False, error=f"Unexpected SAML message: {_local_name(root)}")

        return LogoutRequestInfo(
            success=True,
            id=root.get("ID"),
            issuer=_text(root.find("saml:Issuer", NAMESPACES)),
            name_id=_text(root.find("saml:NameID", NAMESPACES)),
            session_index=_text(root.find("samlp:SessionIndex", NAMESPACES)),
        )

    def parse_logout_response(self, encoded: str, deflated: bool = True) -> LogoutResponseInfo:
        """Parse a LogoutResponse returned by the IdP after SP-initiated logout."""
        try:
            xml = self.decode_message(encoded, deflated)
            root = parse_xml(xml)
        except SAMLXMLError as e:
            return LogoutResponseInfo(success=False, error=f"Invalid LogoutResponse: {e}")

        if root.tag != _q(NS_SAMLP, "LogoutResponse"):
            return LogoutResponseInfo(success=False, error=f"Unexpected SAML message: {_local_name(root)}")

        status_el = root.find("samlp:Status/samlp:StatusCode", NAMESPACES)
        status = status_el.get("Value") if status_el is not None else None
        return LogoutResponseInfo(
            success=status == STATUS_SUCCESS,
            in_response_to=root.get("InResponseTo"),
            issuer=_text(root.find("saml:Issuer", NAMESPACES)),
            status=status,
            error=None if status == STATUS_SUCCESS else f"Logout failed: {status}",
        )

    def decode_message(self, encoded: str, deflated: bool) -> bytes:
        if not deflated:
            return decode_base64(encoded)
        raw = decode_base64(encoded)
        try:
            return zlib.decompress(raw, -15)
        except zlib.error:
            return raw

    # ------------------------------------------------------------------ #
    # Validation
    # ------------------------------------------------------------------ #

    def validate_conditions(
        self,
        assertion: SAMLAssertion,
        expected_audience: str,
        clock_skew: timedelta = DEFAULT_CLOCK_SKEW,
        now: datetime | None = None,
    ) -> ValidationResult:
        """Check the assertion's validity window and audience restriction.

        The window bounds are inclusive of the skew allowance.
        """
        now = now or datetime.now(UTC)

        if assertion.not_before and now < assertion.not_before - clock_skew:
            return ValidationResult.fail(
                "Assertion is not yet valid (NotBefore condition)", code="conditions_invalid"
            )
        if assertion.not_on_or_after and now > assertion.not_on_or_after + clock_skew:
            return ValidationResult.fail(
                "Assertion has expired (NotOnOrAfter condition)", code="conditions_invalid"
            )
        if assertion.audiences and expected_audience not in assertion.audiences:
            return ValidationResult.fail(
                f"Invalid audience: expected {expected_audience}, got {', '.join(assertion.audiences)}",
                code="conditions_invalid",
            )
        return ValidationResult.ok()

    def validate_signature(self, xml: bytes | str, certificate: str) -> ValidationResult:
        """Verify the XML signature on a Response or its Assertion.

        A document without any signature fails. On success the result's
        ``details["signed_id"]`` holds the ID of the element the signature
        covers, so callers can confirm it is the element they read.
        """
        if isinstance(xml, str):
            xml = xml.encode("utf-8")
        try:
            root = parse_xml(xml)
        except SAMLXMLError as e:
            return ValidationResult.fail(str(e), code="invalid_response")

        has_signature = (
            root.find("ds:Signature", NAMESPACES) is not None
            or root.find("saml:Assertion/ds:Signature", NAMESPACES) is not None
        )
        if not has_signature:
            return ValidationResult.fail("No signature found in SAML response", code="signature_invalid")
        if not certificate:
            return ValidationResult.fail("No IdP certificate configured", code="signature_invalid")

        try:
            result = XMLVerifier().verify(xml, x509_cert=normalize_certificate(certificate))
        except (SignXMLException, ValueError) as e:
            logger.warning("saml_signature_invalid", error=str(e))
            return ValidationResult.fail(f"Invalid SAML signature: {e}", code="signature_invalid")

        signed = result.signed_xml
        return ValidationResult.ok(
            signed_id=signed.get("ID") if signed is not None else None,
            signed_element=_local_name(signed) if signed is not None else None,
        )

    def verify_redirect_signature(self, query: str, certificate: str) -> ValidationResult:
        """Verify the query-string signature of an HTTP-Redirect binding message.

        The signed octets are ``SAMLRequest|SAMLResponse``, ``RelayState`` and
        ``SigAlg`` joined in that order, exactly as they appear URL-encoded in
        the raw query string.

        Args:
            query: Raw, still URL-encoded query string of the request.
            certificate: IdP signing certificate, PEM or bare base64.
        """
        params: dict[str, str] = {}
        for part in query.split("&"):
            name, _, value = part.partition("=")
            params.setdefault(name, value)

        signature = params.get("Signature")
        sig_alg = unquote_plus(params.get("SigAlg", ""))
        if not signature or not sig_alg:
            return ValidationResult.fail("Redirect binding message is not signed", code="signature_invalid")
        digest = _REDIRECT_DIGESTS.get(sig_alg)
        if digest is None:
            return ValidationResult.fail(f"Unsupported signature algorithm: {sig_alg}", code="signature_invalid")
        if not certificate:
            return ValidationResult.fail("No IdP certificate configured", code="signature_invalid")

        message = "SAMLRequest" if "SAMLRequest" in params else "SAMLResponse"
        signed = "&".join(f"{name}={params[name]}" for name in (message, "RelayState", "SigAlg") if name in params)
        try:
            cert = x509.load_pem_x509_certificate(normalize_certificate(certificate).encode("ascii"))
            public_key = cert.public_key()
            if not isinstance(public_key, rsa.RSAPublicKey):
                return ValidationResult.fail("IdP certificate must hold an RSA key", code="signature_invalid")
            public_key.verify(
                decode_base64(unquote_plus(signature)),
                signed.encode("utf-8"),
                padding.PKCS1v15(),
                digest,
            )
        except (InvalidSignature, ValueError) as e:
            logger.warning("saml_redirect_signature_invalid", error=str(e) or type(e).__name__)
            return ValidationResult.fail("Invalid redirect binding signature", code="signature_invalid")
        return ValidationResult.ok()

    # ------------------------------------------------------------------ #
    # Attributes and metadata
    # ------------------------------------------------------------------ #

    def extract_attributes(self, assertion: SAMLAssertion) -> ExtractedAttributes:
        """Find profile fields under well-known attribute names.

        Falls back to the NameID for email when its format is an email address.
        """
        attrs = assertion.attributes

        def find(keys: tuple[str, ...]) -> str | None:
            for key in keys:
                value = attrs.get(key)
                if value:
                    return value[0] if isinstance(value, list) else value
            return None

        email = find(EMAIL_KEYS)
        if not email and "emailAddress" in assertion.name_id_format and assertion.name_id:
            email = assertion.name_id

        groups: list[str] | None = None
        for key in GROUP_KEYS:
            value = attrs.get(key)
            if value:
                groups = list(value) if isinstance(value, list) else [value]
                break

        return ExtractedAttributes(
            email=email,
            name=find(NAME_KEYS),
            first_name=find(FIRST_NAME_KEYS),
            last_name=find(LAST_NAME_KEYS),
            groups=groups,
        )

    def generate_sp_metadata(
        self,
        config: SSOConfiguration,
        workspace_slug: str,
        name_id_formats: list[str] | None = None,
    ) -> str:
        """Render SP metadata (EntityDescriptor/SPSSODescriptor) for the IdP."""
        endpoints = self.sp_endpoints(config, workspace_slug)
        formats = name_id_formats or [NAMEID_EMAIL, NAMEID_PERSISTENT]

        root = etree.Element(_q(NS_MD, "EntityDescriptor"), nsmap={None: NS_MD, "ds": NS_DS})
        root.set("entityID", endpoints.entity_id)

        sp = etree.SubElement(root, _q(NS_MD, "SPSSODescriptor"))
        sp.set("AuthnRequestsSigned", "true" if config.saml_sign_requests and self._sp_key else "false")
        sp.set("WantAssertionsSigned", "true")
        sp.set("protocolSupportEnumeration", NS_SAMLP)

        if self._sp_certificate:
            key_descriptor = etree.SubElement(sp, _q(NS_MD, "KeyDescriptor"))
            key_descriptor.set("use", "signing")
            key_info = etree.SubElement(key_descriptor, _q(NS_DS, "KeyInfo"))
            x509_data = etree.SubElement(key_info, _q(NS_DS, "X509Data"))
            body = normalize_certificate(self._sp_certificate).splitlines()[1:-1]
            etree.SubElement(x509_data, _q(NS_DS, "X509Certificate")).text = "".join(body)

        for binding in (BINDING_HTTP_REDIRECT, BINDING_HTTP_POST):
            slo = etree.SubElement(sp, _q(NS_MD, "SingleLogoutService"))
            slo.set("Binding", binding)
            slo.set("Location", endpoints.slo_url)

        for name_id_format in formats:
            etree.SubElement(sp, _q(NS_MD, "NameIDFormat")).text = name_id_format

        acs = etree.SubElement(sp, _q(NS_MD, "AssertionConsumerService"))
        acs.set("Binding", BINDING_HTTP_POST)
        acs.set("Location", endpoints.acs_url)
        acs.set("index", "0")
        acs.set("isDefault", "true")

        org = etree.SubElement(root, _q(NS_MD, "Organization"))
        for tag, value in (
            ("OrganizationName", self._org_name),
            ("OrganizationDisplayName", self._org_display_name),
            ("OrganizationURL", self._org_url),
        ):
            child = etree.SubElement(org, _q(NS_MD, tag))
            child.set(XML_LANG, "en")
            child.text = value

        return etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True).decode("utf-8")
