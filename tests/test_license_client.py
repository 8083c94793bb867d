"""
Unit tests for LicenseClient.

Covers local key checks, response classification and the validation cache.
"""

import httpx
import pytest

from config import settings
from conftest import SITE
from errors import (
    FailureKind, InvalidInput, MalformedResponse, NetworkUnreachable,
    RemoteRejected, ServerError, Timeout,
)
from models import LicenseStatus


@pytest.mark.unit
class TestKeyChecks:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["", "   ", None])
    async def test_empty_key_never_reaches_server(self, license_client, authority, key) -> None:
        with pytest.raises(InvalidInput):
            await license_client.activate(key, SITE)

        assert authority.calls == []

    @pytest.mark.asyncio
    async def test_key_with_illegal_characters_is_rejected_locally(self, license_client, authority) -> None:
        with pytest.raises(InvalidInput, match="format"):
            await license_client.activate("abc; drop table", SITE)

        assert authority.calls == []

    def test_key_is_trimmed(self, license_client) -> None:
        assert license_client.check_key("  ABC-123  ") == "ABC-123"


@pytest.mark.unit
class TestActivate:
    @pytest.mark.asyncio
    async def test_success_returns_normalized_result(self, license_client, authority) -> None:
        result = await license_client.activate("ABC123", SITE)

        assert result.status is LicenseStatus.ACTIVE
        assert result.max_sites == 3
        assert result.expires_at.year == 2027
        assert authority.calls[0]["action"] == "activate_license"
        assert authority.calls[0]["license_key"] == "ABC123"
        assert authority.calls[0]["site_identifier"] == SITE
        assert authority.calls[0]["plugin_version"] == settings.APP_VERSION

    @pytest.mark.asyncio
    async def test_rejection_carries_reason_verbatim(self, license_client, authority) -> None:
        authority.will_return(result="rejected", status="invalid", reason="site limit exceeded")

        with pytest.raises(RemoteRejected) as exc_info:
            await license_client.activate("XYZ", SITE)

        assert exc_info.value.message == "site limit exceeded"
        assert exc_info.value.kind is FailureKind.AUTHORITATIVE

    @pytest.mark.asyncio
    async def test_rejection_payload_on_client_error_status_is_authoritative(self, license_client, authority) -> None:
        authority.will_return(403, result="rejected", status="expired", reason="License expired")

        with pytest.raises(RemoteRejected) as exc_info:
            await license_client.activate("ABC123", SITE)

        assert exc_info.value.status is LicenseStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_success_reporting_expired_status_is_rejection(self, license_client, authority) -> None:
        authority.will_return(result="success", status="expired")

        with pytest.raises(RemoteRejected) as exc_info:
            await license_client.activate("ABC123", SITE)

        assert exc_info.value.status is LicenseStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_development_key_skips_network(self, license_client, authority, monkeypatch) -> None:
        monkeypatch.setattr(settings, "ALLOW_DEVELOPMENT_KEYS", True)

        result = await license_client.activate("test", SITE)

        assert result.status is LicenseStatus.ACTIVE
        assert authority.calls == []

    @pytest.mark.asyncio
    async def test_development_key_goes_to_server_when_disabled(self, license_client, authority) -> None:
        await license_client.activate("test", SITE)

        assert authority.actions == ["activate_license"]


@pytest.mark.unit
class TestFailureClassification:
    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, license_client, authority) -> None:
        authority.will_return(503, result="rejected", reason="maintenance")

        with pytest.raises(ServerError) as exc_info:
            await license_client.activate("ABC123", SITE)

        assert exc_info.value.kind is FailureKind.TRANSIENT
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_non_2xx_without_rejection_payload_is_transient(self, license_client, authority) -> None:
        authority.will_send(404, b"<html>Not Found</html>")

        with pytest.raises(ServerError):
            await license_client.activate("ABC123", SITE)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", [b"not json", b"[1, 2]", b'{"result": "maybe"}', b'{"result": "success"}'])
    async def test_unparseable_body_is_malformed(self, license_client, authority, content) -> None:
        authority.will_send(200, content)

        with pytest.raises(MalformedResponse) as exc_info:
            await license_client.activate("ABC123", SITE)

        assert exc_info.value.kind is FailureKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_error_result_is_server_error(self, license_client, authority) -> None:
        authority.will_return(result="error", reason="database unavailable")

        with pytest.raises(ServerError, match="database unavailable"):
            await license_client.activate("ABC123", SITE)

    @pytest.mark.asyncio
    async def test_timeout(self, license_client, authority) -> None:
        authority.will_raise(httpx.ReadTimeout)

        with pytest.raises(Timeout):
            await license_client.activate("ABC123", SITE)

    @pytest.mark.asyncio
    async def test_connection_failure(self, license_client, authority) -> None:
        authority.offline = True

        with pytest.raises(NetworkUnreachable):
            await license_client.activate("ABC123", SITE)

    @pytest.mark.asyncio
    async def test_attempts_are_recorded(self, license_client, authority, store) -> None:
        await license_client.activate("ABC123", SITE)
        authority.will_return(result="rejected", reason="revoked")
        with pytest.raises(RemoteRejected):
            await license_client.validate("ABC123", SITE, force=True)

        attempts = store.recent_attempts()

        assert [a.result for a in attempts] == ["rejected", "success"]
        assert attempts[0].action == "check_license"
        assert attempts[0].message == "revoked"


@pytest.mark.unit
class TestValidateCache:
    @pytest.mark.asyncio
    async def test_second_unforced_call_within_ttl_uses_cache(self, license_client, authority, clock) -> None:
        first = await license_client.validate("ABC123", SITE)
        clock.advance(minutes=5)
        second = await license_client.validate("ABC123", SITE)

        assert len(authority.calls) == 1
        assert first.from_cache is False
        assert second.from_cache is True
        assert second.checked_at == first.checked_at

    @pytest.mark.asyncio
    async def test_cache_expires_after_ttl(self, license_client, authority, clock) -> None:
        await license_client.validate("ABC123", SITE)
        clock.advance(minutes=11)
        await license_client.validate("ABC123", SITE)

        assert len(authority.calls) == 2

    @pytest.mark.asyncio
    async def test_force_bypasses_cache(self, license_client, authority) -> None:
        await license_client.validate("ABC123", SITE)
        await license_client.validate("ABC123", SITE, force=True)

        assert len(authority.calls) == 2

    @pytest.mark.asyncio
    async def test_cached_failure_is_replayed(self, license_client, authority) -> None:
        authority.offline = True
        with pytest.raises(NetworkUnreachable):
            await license_client.validate("ABC123", SITE)

        with pytest.raises(NetworkUnreachable) as exc_info:
            await license_client.validate("ABC123", SITE)

        assert exc_info.value.from_cache is True
        assert len(authority.calls) == 1

    @pytest.mark.asyncio
    async def test_cached_rejection_keeps_status(self, license_client, authority) -> None:
        authority.will_return(result="rejected", status="expired", reason="License expired")
        with pytest.raises(RemoteRejected):
            await license_client.validate("ABC123", SITE)

        with pytest.raises(RemoteRejected) as exc_info:
            await license_client.validate("ABC123", SITE)

        assert exc_info.value.status == "expired"
        assert exc_info.value.message == "License expired"


@pytest.mark.unit
class TestDeactivate:
    @pytest.mark.asyncio
    async def test_sends_release_request(self, license_client, authority) -> None:
        authority.will_return(result="success", status="inactive")

        result = await license_client.deactivate("ABC123", SITE)

        assert result.status is LicenseStatus.INACTIVE
        assert authority.actions == ["deactivate_license"]

    @pytest.mark.asyncio
    async def test_failure_is_raised(self, license_client, authority) -> None:
        authority.offline = True

        with pytest.raises(NetworkUnreachable):
            await license_client.deactivate("ABC123", SITE)
