"""DNS TXT verification for domain routings."""

from dataclasses import dataclass

import dns.asyncresolver
import dns.exception
import dns.resolver
import structlog

from tessera.core.crypto import generate_verification_token

logger = structlog.get_logger()

DEFAULT_PRODUCT = "tessera"
DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass
class VerificationToken:
    """DNS verification challenge for a domain."""

    token: str
    dns_record: str
    dns_value: str

    @classmethod
    def generate(cls, domain: str, product: str = DEFAULT_PRODUCT) -> "VerificationToken":
        """Generate a new verification challenge.

        Args:
            domain: Normalized domain to verify.
            product: Product name used in the record name and value.

        Returns:
            Token with the DNS record to publish.
        """
        token = generate_verification_token()
        return cls(
            token=token,
            dns_record=record_name(domain, product),
            dns_value=record_value(token, product),
        )


def record_name(domain: str, product: str = DEFAULT_PRODUCT) -> str:
    """TXT record name: ``_<product>-verification.<domain>``."""
    return f"_{product}-verification.{domain}"


def record_value(token: str, product: str = DEFAULT_PRODUCT) -> str:
    """TXT record value: ``<product>-verify=<token>``."""
    return f"{product}-verify={token}"


async def verify_domain_dns(
    domain: str,
    expected_token: str,
    product: str = DEFAULT_PRODUCT,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> bool:
    """Verify domain ownership via a DNS TXT record.

    Args:
        domain: Domain to verify.
        expected_token: Token issued when the routing was created.
        product: Product name used in the record.
        timeout: Lookup lifetime in seconds.

    Returns:
        True if a TXT record carries the expected value.
    """
    name = record_name(domain, product)
    expected_value = record_value(expected_token, product)

    logger.info("dns_verification_started", record=name)
    try:
        answers = await dns.asyncresolver.resolve(name, "TXT", lifetime=timeout)
    except dns.resolver.NXDOMAIN:
        logger.warning("dns_verification_failed", domain=domain, reason="nxdomain")
        return False
    except dns.resolver.NoAnswer:
        logger.warning("dns_verification_failed", domain=domain, reason="no_txt_record")
        return False
    except dns.resolver.NoNameservers:
        logger.warning("dns_verification_failed", domain=domain, reason="no_nameservers")
        return False
    except dns.exception.Timeout:
        logger.warning("dns_verification_failed", domain=domain, reason="timeout")
        return False

    for rdata in answers:
        # TXT records may be split into several strings
        txt_value = "".join(s.decode() for s in rdata.strings)
        if txt_value == expected_value:
            logger.info("dns_verification_succeeded", domain=domain)
            return True

    logger.warning("dns_verification_failed", domain=domain, reason="token_not_found")
    return False


def generate_verification_instructions(domain: str, token: str, product: str = DEFAULT_PRODUCT) -> str:
    """Generate human-readable DNS verification instructions."""
    return f"""To verify ownership of {domain}, add the following DNS TXT record:

Record Name: {record_name(domain, product)}
Record Type: TXT
Record Value: {record_value(token, product)}

After adding the record, it may take up to 24 hours to propagate.
Once propagated, click "Verify" to complete the verification process.
"""
