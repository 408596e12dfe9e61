"""Unit tests for DNS TXT verification."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import dns.exception
import dns.resolver
import pytest

from tessera.core.dns_verification import (
    VerificationToken,
    generate_verification_instructions,
    record_name,
    record_value,
    verify_domain_dns,
)


def _txt(*parts: bytes) -> MagicMock:
    rdata = MagicMock()
    rdata.strings = parts
    return rdata


class TestRecordFormat:
    """Tests for record names and values."""

    def test_record_name_and_value(self) -> None:
        """Test the published record format."""
        assert record_name("acme.com") == "_tessera-verification.acme.com"
        assert record_value("abc") == "tessera-verify=abc"
        assert record_name("acme.com", "widget") == "_widget-verification.acme.com"

    def test_generate(self) -> None:
        """Test generated challenges embed the token."""
        challenge = VerificationToken.generate("acme.com")

        assert len(challenge.token) == 64
        assert challenge.dns_record == "_tessera-verification.acme.com"
        assert challenge.dns_value == f"tessera-verify={challenge.token}"

    def test_instructions_mention_record(self) -> None:
        """Test instructions include name and value."""
        text = generate_verification_instructions("acme.com", "abc")

        assert "_tessera-verification.acme.com" in text
        assert "tessera-verify=abc" in text


class TestVerifyDomainDns:
    """Tests for verify_domain_dns."""

    async def test_matching_record(self) -> None:
        """Test a matching TXT record verifies."""
        answers = [_txt(b"other"), _txt(b"tessera-verify=abc")]
        with patch(
            "tessera.core.dns_verification.dns.asyncresolver.resolve",
            AsyncMock(return_value=answers),
        ) as resolve:
            assert await verify_domain_dns("acme.com", "abc", timeout=3.0)

        resolve.assert_awaited_once_with("_tessera-verification.acme.com", "TXT", lifetime=3.0)

    async def test_split_record_strings_joined(self) -> None:
        """Test long TXT values split into several strings still match."""
        answers = [_txt(b"tessera-verify=", b"abc")]
        with patch(
            "tessera.core.dns_verification.dns.asyncresolver.resolve",
            AsyncMock(return_value=answers),
        ):
            assert await verify_domain_dns("acme.com", "abc")

    async def test_wrong_token(self) -> None:
        """Test a record with a different token fails."""
        with patch(
            "tessera.core.dns_verification.dns.asyncresolver.resolve",
            AsyncMock(return_value=[_txt(b"tessera-verify=zzz")]),
        ):
            assert not await verify_domain_dns("acme.com", "abc")

    @pytest.mark.parametrize(
        "error",
        [
            dns.resolver.NXDOMAIN(),
            dns.resolver.NoAnswer(),
            dns.resolver.NoNameservers(),
            dns.exception.Timeout(),
        ],
    )
    async def test_lookup_errors_fail_closed(self, error: Exception) -> None:
        """Test resolver errors report unverified instead of raising."""
        with patch(
            "tessera.core.dns_verification.dns.asyncresolver.resolve",
            AsyncMock(side_effect=error),
        ):
            assert not await verify_domain_dns("acme.com", "abc")
