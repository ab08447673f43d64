"""End-to-end tests wiring the runtime against a mocked identity provider."""

import json
from unittest.mock import MagicMock

import httpx
import pytest

from sessionguard.config import Settings
from sessionguard.service import runtime as runtime_module
from sessionguard.service.errors import RateLimitedError
from sessionguard.service.otp import FlowState
from sessionguard.service.runtime import Runtime, get_runtime, reset_runtime_for_tests

EMAIL = "parent@example.com"
USER = {"id": "u-4", "email": EMAIL, "role": "parent"}


def identity_provider(calls):
    def handler(request):
        calls.append(request.url.path)
        path = request.url.path
        if path.endswith("/login"):
            return httpx.Response(
                200,
                json={"data": {"requires_2fa": True, "session_token": "sess-1", "email": EMAIL}},
            )
        if path.endswith("/verify-otp"):
            body = json.loads(request.content)
            if body["otp_code"] != "246810":
                return httpx.Response(401, json={"message": "bad code"})
            return httpx.Response(
                200, json={"access_token": "access-1", "expires_in": 120, "user": USER}
            )
        if path.endswith("/refresh"):
            return httpx.Response(200, json={"access_token": "access-2", "expires_in": 900})
        return httpx.Response(204)

    return handler


def make_runtime(tmp_path, clock, calls):
    settings = Settings(state_dir=str(tmp_path), api_base_url="http://identity.test")
    return Runtime(
        settings, clock=clock, transport=httpx.MockTransport(identity_provider(calls))
    )


async def test_two_factor_login_warning_and_extension(tmp_path, clock):
    calls = []
    rt = make_runtime(tmp_path, clock, calls)
    await rt.hydrate()
    navigate = MagicMock()
    warnings = []
    rt.token_monitor.subscribe(warnings.append)
    teardown = rt.token_monitor.watch(rt.auth.subscribe)

    result = await rt.auth.login(EMAIL, "Zebra-Crossing-42")
    assert result.requires_two_factor is True

    flow = rt.create_otp_flow(navigate=navigate)
    flow.mount()
    await flow.handle_paste("000000")
    assert flow.display_error == "Invalid or expired OTP"

    await flow.handle_paste("246-810")

    assert flow.state is FlowState.VERIFIED
    navigate.assert_called_once_with("/parent")
    assert rt.auth.is_authenticated is True
    # 120s lifetime minus the 30s buffer is inside the warning threshold
    assert len(warnings) == 1
    assert warnings[0].remaining_ms == 90_000

    assert await rt.token_monitor.extend() is True
    assert rt.tokens.get_access_token() == "access-2"
    assert rt.token_monitor.warning_shown is False

    teardown()
    flow.unmount()
    await rt.aclose()
    assert calls[-1].endswith("/refresh")


async def test_reload_restores_flags_but_not_tokens(tmp_path, clock):
    calls = []
    rt = make_runtime(tmp_path, clock, calls)
    await rt.hydrate()
    await rt.auth.login(EMAIL, "Zebra-Crossing-42")
    await rt.aclose()

    reloaded = make_runtime(tmp_path, clock, calls)
    navigate = MagicMock()
    flow = reloaded.create_otp_flow(navigate=navigate)
    flow.mount()
    assert flow.state is FlowState.AWAITING_HYDRATION

    await reloaded.hydrate()

    assert flow.state is FlowState.ACTIVE
    assert flow.email == EMAIL
    assert reloaded.tokens.get_access_token() is None
    assert reloaded.rate_limiter.window_for("/api/v1/auth/login") is None
    navigate.assert_not_called()
    await reloaded.aclose()


async def test_login_is_gated_by_auth_quota(tmp_path, clock):
    calls = []
    rt = make_runtime(tmp_path, clock, calls)
    await rt.hydrate()

    for _ in range(5):
        await rt.auth.login(EMAIL, "pw")
    with pytest.raises(RateLimitedError) as excinfo:
        await rt.auth.login(EMAIL, "pw")

    assert excinfo.value.retry_after_seconds == 60
    assert rt.auth.error == excinfo.value.message
    assert calls.count("/api/v1/auth/login") == 5
    await rt.aclose()


def test_get_runtime_is_a_singleton():
    first = get_runtime()

    assert get_runtime() is first
    reset_runtime_for_tests()
    assert runtime_module.runtime is None
    assert get_runtime() is not first
