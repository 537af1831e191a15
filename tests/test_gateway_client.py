"""Tests for the client gateway's single-flight refresh and session storage."""

import asyncio
import json

import httpx
import pytest

from conftest import PASSWORD
from docvault import app as app_module
from docvault.client.gateway import (
    FileTokenStore,
    GatewayClient,
    LoginFailed,
    SessionContext,
    SessionExpired,
)
from docvault.service.errors import ErrorKind


def _gateway(context=None):
    return GatewayClient(
        "http://testserver",
        context=context,
        transport=httpx.ASGITransport(app=app_module.app),
    )


def _family_size(runtime, family_id):
    return sum(
        1 for c in runtime.store.refresh_credentials.values() if c.family_id == family_id
    )


class TestGatewayLogin:
    async def test_login_populates_context(self, user):
        async with _gateway() as gateway:
            profile = await gateway.login(user.email, PASSWORD)

            assert profile["id"] == user.id
            assert gateway.context.is_authenticated
            assert gateway.context.user["tenantId"] == "acme"
            # Session-scoped logins never keep the refresh token outside the cookie jar
            assert gateway.context.refresh_token is None

    async def test_bad_credentials_raise_login_failed(self, user):
        async with _gateway() as gateway:
            with pytest.raises(LoginFailed) as exc_info:
                await gateway.login(user.email, "wrong-password")

        assert exc_info.value.kind == ErrorKind.INVALID_CREDENTIALS
        assert exc_info.value.message == "Invalid email or password"

    async def test_logout_clears_context(self, user):
        async with _gateway() as gateway:
            await gateway.login(user.email, PASSWORD)
            await gateway.logout()

            assert not gateway.context.is_authenticated
            with pytest.raises(SessionExpired):
                await gateway.get("/api/auth/me")


class TestSingleFlightRefresh:
    async def test_burst_of_401s_triggers_one_refresh(self, user, runtime):
        async with _gateway() as gateway:
            await gateway.login(user.email, PASSWORD)
            family_id = next(iter(runtime.store.refresh_credentials.values())).family_id
            gateway.context.update("expired.access.token")

            responses = await asyncio.gather(
                *(gateway.get("/api/auth/me") for _ in range(8))
            )

            assert [r.status_code for r in responses] == [200] * 8
            assert gateway.refresh_count == 1
            # One login record plus exactly one rotation
            assert _family_size(runtime, family_id) == 2
            assert gateway.context.access_token != "expired.access.token"

    async def test_revoked_session_raises_session_expired(self, user, runtime):
        async with _gateway() as gateway:
            await gateway.login(user.email, PASSWORD)
            family_id = next(iter(runtime.store.refresh_credentials.values())).family_id
            runtime.store.revoke_refresh_family(family_id)
            gateway.context.update("expired.access.token")

            with pytest.raises(SessionExpired) as exc_info:
                await gateway.get("/api/auth/me")

            assert exc_info.value.kind == ErrorKind.REVOKED
            assert gateway.context.access_token is None
            assert gateway.refresh_count == 1

    async def test_forbidden_is_not_a_refresh_trigger(self, user):
        async with _gateway() as gateway:
            await gateway.login(user.email, PASSWORD)

            valid = await gateway.validate_object_key(
                "globex/documents/doc_1-0123456789abcdef/a.pdf"
            )

            assert valid is False
            assert gateway.refresh_count == 0


class TestDocuments:
    async def test_grant_then_upload(self, user, runtime):
        async with _gateway() as gateway:
            await gateway.login(user.email, PASSWORD)

            grant = await gateway.request_upload_grant("plan.pdf", "application/pdf", 4)
            await gateway.upload_to_grant(grant, b"%PDF")

            assert await gateway.validate_object_key(grant["key"]) is True
            assert runtime.storage.object_path(grant["key"]).read_bytes() == b"%PDF"

    async def test_direct_upload(self, user):
        async with _gateway() as gateway:
            await gateway.login(user.email, PASSWORD)

            result = await gateway.direct_upload("notes.txt", b"hi", "text/plain")

            assert result["size"] == 2
            assert result["objectKey"].startswith("acme/documents/")


class TestRememberedSessions:
    async def test_remembered_session_survives_restart(self, user, tmp_path):
        path = tmp_path / "session.json"

        async with _gateway(SessionContext(persistent_store=FileTokenStore(path))) as gateway:
            await gateway.login(user.email, PASSWORD, remember_me=True)

        stored = json.loads(path.read_text())
        assert stored["accessToken"]
        assert stored["refreshToken"]
        assert (path.stat().st_mode & 0o777) == 0o600

        restored = SessionContext(persistent_store=FileTokenStore(path))
        assert restored.remember_me is True
        restored.update("expired.access.token")
        async with _gateway(restored) as gateway:
            response = await gateway.get("/api/auth/me")

            assert response.status_code == 200
            assert gateway.refresh_count == 1
        assert json.loads(path.read_text())["refreshToken"] != stored["refreshToken"]

    async def test_session_login_does_not_touch_disk(self, user, tmp_path):
        path = tmp_path / "session.json"

        async with _gateway(SessionContext(persistent_store=FileTokenStore(path))) as gateway:
            await gateway.login(user.email, PASSWORD)

        assert not path.exists()


class TestLifecycle:
    async def test_close_cancels_in_flight_refresh(self):
        refresh_started = asyncio.Event()

        async def handler(request):
            if request.url.path == "/api/auth/refresh":
                refresh_started.set()
                await asyncio.Event().wait()
            return httpx.Response(
                401, json={"success": False, "code": "INVALID_TOKEN", "message": "expired"}
            )

        context = SessionContext()
        context.update("stale.token")
        gateway = GatewayClient(
            "http://testserver", context=context, transport=httpx.MockTransport(handler)
        )
        pending = asyncio.create_task(gateway.get("/api/auth/me"))
        await refresh_started.wait()
        refresh_task = gateway._refresh_task

        await gateway.aclose()

        assert refresh_task.cancelled()
        assert gateway._refresh_task is None
        with pytest.raises(asyncio.CancelledError):
            await pending
