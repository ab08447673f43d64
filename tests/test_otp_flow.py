"""Tests for the one-time-passcode verification flow."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from sessionguard.api.client import INVALID_OTP_MESSAGE, IdentityClient
from sessionguard.api.schemas import (
    BackendUser,
    ResendResponse,
    TokenResponse,
    TwoFactorChallengeResponse,
)
from sessionguard.service.auth import LOGIN_PATH, AuthSessionStore
from sessionguard.service.errors import (
    RateLimitedError,
    ResendError,
    TransportError,
    VerificationError,
)
from sessionguard.service.otp import RESEND_SUCCESS_MESSAGE, FlowState, OtpVerificationFlow
from sessionguard.service.tokens import TokenManager
from sessionguard.storage.memory import PersistentSessionStore

EMAIL = "student@example.com"

CHALLENGE = TwoFactorChallengeResponse(
    session_token="sess-1", email=EMAIL, expires_at="2030-01-01T00:00:00Z"
)


def token_response(role="student"):
    return TokenResponse(
        access_token="access-1",
        expires_in=900,
        user=BackendUser(id="u-1", email=EMAIL, role=role),
    )


def make_client():
    client = MagicMock(spec=IdentityClient)
    client.login = AsyncMock(return_value=CHALLENGE)
    client.verify_otp = AsyncMock(return_value=token_response())
    client.resend_otp = AsyncMock(return_value=ResendResponse())
    client.logout = AsyncMock(return_value=None)
    return client


async def make_challenged_store(tmp_path, clock, client=None):
    client = client or make_client()
    storage = PersistentSessionStore(str(tmp_path))
    auth = AuthSessionStore(client=client, tokens=TokenManager(clock=clock), storage=storage)
    await storage.hydrate()
    await auth.login(EMAIL, "Zebra-Crossing-42")
    return auth, client


async def _blocked_sleep(_seconds):
    await asyncio.Event().wait()


def mount_flow(auth, sleep=_blocked_sleep):
    navigate = MagicMock()
    notify = MagicMock()
    flow = OtpVerificationFlow(auth, navigate=navigate, notify=notify, sleep=sleep)
    flow.mount()
    return flow, navigate, notify


class TestMountAndHydration:
    async def test_waits_for_hydration_before_deciding(self, tmp_path, clock):
        await make_challenged_store(tmp_path, clock)

        storage = PersistentSessionStore(str(tmp_path))
        auth = AuthSessionStore(
            client=make_client(), tokens=TokenManager(clock=clock), storage=storage
        )
        flow, navigate, _ = mount_flow(auth)

        assert flow.state is FlowState.AWAITING_HYDRATION
        assert auth.two_factor_pending is None
        assert await flow.submit_digit(0, "1") is False
        navigate.assert_not_called()

        await storage.hydrate()

        assert flow.state is FlowState.ACTIVE
        assert flow.email == EMAIL
        navigate.assert_not_called()

    async def test_redirects_to_login_when_nothing_pending(self, tmp_path, clock):
        storage = PersistentSessionStore(str(tmp_path))
        auth = AuthSessionStore(
            client=make_client(), tokens=TokenManager(clock=clock), storage=storage
        )
        flow, navigate, _ = mount_flow(auth)
        navigate.assert_not_called()

        await storage.hydrate()

        assert flow.state is FlowState.NO_PENDING_SESSION
        navigate.assert_called_once_with(LOGIN_PATH)

    async def test_mount_after_hydration_evaluates_immediately(self, tmp_path, clock):
        auth, _ = await make_challenged_store(tmp_path, clock)

        flow, navigate, _ = mount_flow(auth)

        assert flow.state is FlowState.ACTIVE
        assert flow.entry.focused_index == 0
        navigate.assert_not_called()

    async def test_challenge_cleared_elsewhere_redirects(self, tmp_path, clock):
        auth, _ = await make_challenged_store(tmp_path, clock)
        flow, navigate, _ = mount_flow(auth)

        auth.clear_two_factor_state()

        assert flow.state is FlowState.NO_PENDING_SESSION
        navigate.assert_called_once_with(LOGIN_PATH)


class TestDigitEntry:
    async def test_rejects_non_numeric_input(self, tmp_path, clock):
        auth, _ = await make_challenged_store(tmp_path, clock)
        flow, _, _ = mount_flow(auth)

        assert await flow.submit_digit(0, "a") is False
        assert await flow.submit_digit(0, "٣") is False
        assert await flow.submit_digit(6, "1") is False
        assert flow.digits == [""] * 6

    async def test_keeps_last_character_and_advances_focus(self, tmp_path, clock):
        auth, _ = await make_challenged_store(tmp_path, clock)
        flow, _, _ = mount_flow(auth)

        assert await flow.submit_digit(0, "12") is True

        assert flow.digits[0] == "2"
        assert flow.entry.focused_index == 1

    async def test_backspace_on_empty_slot_moves_focus_back(self, tmp_path, clock):
        auth, _ = await make_challenged_store(tmp_path, clock)
        flow, _, _ = mount_flow(auth)
        await flow.submit_digit(0, "1")
        await flow.submit_digit(1, "2")

        flow.handle_key_down(2, "Backspace")
        assert flow.entry.focused_index == 1

        flow.handle_key_down(1, "Backspace")
        assert flow.entry.focused_index == 1

        flow.handle_key_down(0, "Backspace")
        assert flow.entry.focused_index == 1

    async def test_completing_code_submits_exactly_once(self, tmp_path, clock):
        client = make_client()
        client.verify_otp = AsyncMock(
            side_effect=[VerificationError(INVALID_OTP_MESSAGE), token_response()]
        )
        auth, _ = await make_challenged_store(tmp_path, clock, client)
        flow, navigate, _ = mount_flow(auth)

        for index, digit in enumerate("123456"):
            await flow.submit_digit(index, digit)

        client.verify_otp.assert_awaited_once_with("sess-1", "123456")
        assert flow.state is FlowState.ACTIVE
        assert flow.display_error == INVALID_OTP_MESSAGE

        # Editing a digit of a complete code does not resubmit
        await flow.submit_digit(2, "9")
        assert client.verify_otp.await_count == 1

        assert await flow.submit() is True
        assert client.verify_otp.await_count == 2
        assert client.verify_otp.await_args.args == ("sess-1", "129456")
        navigate.assert_called_once_with("/student")

    async def test_clearing_a_slot_rearms_auto_submit(self, tmp_path, clock):
        client = make_client()
        client.verify_otp = AsyncMock(side_effect=VerificationError(INVALID_OTP_MESSAGE))
        auth, _ = await make_challenged_store(tmp_path, clock, client)
        flow, _, _ = mount_flow(auth)
        for index, digit in enumerate("123456"):
            await flow.submit_digit(index, digit)

        await flow.submit_digit(5, "")
        assert client.verify_otp.await_count == 1
        await flow.submit_digit(5, "7")

        assert client.verify_otp.await_count == 2
        assert client.verify_otp.await_args.args == ("sess-1", "123457")


class TestPaste:
    async def test_paste_strips_non_digits_and_submits_once(self, tmp_path, clock):
        auth, client = await make_challenged_store(tmp_path, clock)
        flow, navigate, _ = mount_flow(auth)

        assert await flow.handle_paste("12a3456bb") is True

        client.verify_otp.assert_awaited_once_with("sess-1", "123456")
        assert flow.state is FlowState.VERIFIED
        assert auth.is_authenticated is True
        assert auth.two_factor_pending is None
        navigate.assert_called_once_with("/student")

    async def test_paste_truncates_to_code_length(self, tmp_path, clock):
        auth, client = await make_challenged_store(tmp_path, clock)
        flow, _, _ = mount_flow(auth)

        await flow.handle_paste("1234567890")

        client.verify_otp.assert_awaited_once_with("sess-1", "123456")

    async def test_short_paste_is_ignored(self, tmp_path, clock):
        auth, client = await make_challenged_store(tmp_path, clock)
        flow, _, _ = mount_flow(auth)

        assert await flow.handle_paste("12-34") is False

        client.verify_otp.assert_not_awaited()
        assert flow.digits == [""] * 6


class TestVerification:
    async def test_navigates_to_role_home(self, tmp_path, clock):
        client = make_client()
        client.verify_otp = AsyncMock(return_value=token_response(role="parent"))
        auth, _ = await make_challenged_store(tmp_path, clock, client)
        flow, navigate, _ = mount_flow(auth)

        await flow.handle_paste("123456")

        navigate.assert_called_once_with("/parent")

    async def test_unknown_role_goes_to_login(self, tmp_path, clock):
        client = make_client()
        client.verify_otp = AsyncMock(return_value=token_response(role="janitor"))
        auth, _ = await make_challenged_store(tmp_path, clock, client)
        flow, navigate, _ = mount_flow(auth)

        await flow.handle_paste("123456")

        navigate.assert_called_once_with(LOGIN_PATH)

    async def test_rate_limit_shown_inline(self, tmp_path, clock):
        client = make_client()
        client.verify_otp = AsyncMock(
            side_effect=RateLimitedError(
                "Too many attempts. Try again in 50 seconds.", retry_after_seconds=50
            )
        )
        auth, _ = await make_challenged_store(tmp_path, clock, client)
        flow, navigate, _ = mount_flow(auth)

        await flow.handle_paste("123456")

        assert flow.state is FlowState.ACTIVE
        assert flow.display_error == "Too many attempts. Try again in 50 seconds."
        assert flow.entry.is_submitting is False
        navigate.assert_not_called()

    async def test_unexpected_failure_restores_form_and_propagates(self, tmp_path, clock):
        client = make_client()
        client.verify_otp = AsyncMock(
            side_effect=TransportError("Service temporarily unavailable.")
        )
        auth, _ = await make_challenged_store(tmp_path, clock, client)
        flow, _, _ = mount_flow(auth)

        with pytest.raises(TransportError):
            await flow.handle_paste("123456")

        assert flow.state is FlowState.ACTIVE
        assert flow.entry.is_submitting is False

    async def test_cancel_drops_late_verification(self, tmp_path, clock):
        release = asyncio.Event()

        async def slow_verify(session_token, code):
            await release.wait()
            return token_response()

        client = make_client()
        client.verify_otp = AsyncMock(side_effect=slow_verify)
        auth, _ = await make_challenged_store(tmp_path, clock, client)
        flow, navigate, _ = mount_flow(auth)

        task = asyncio.create_task(flow.handle_paste("123456"))
        await asyncio.sleep(0)
        assert flow.state is FlowState.SUBMITTING

        flow.cancel()
        release.set()
        await task

        assert flow.state is FlowState.CANCELLED
        assert auth.is_authenticated is False
        assert auth.two_factor_pending is None
        navigate.assert_called_once_with(LOGIN_PATH)


class TestResend:
    async def test_resend_starts_cooldown_and_clears_code(self, tmp_path, clock):
        client = make_client()
        client.verify_otp = AsyncMock(side_effect=VerificationError(INVALID_OTP_MESSAGE))
        auth, _ = await make_challenged_store(tmp_path, clock, client)
        flow, _, notify = mount_flow(auth)
        await flow.handle_paste("123456")

        assert await flow.resend() is True

        client.resend_otp.assert_awaited_once_with("sess-1")
        assert flow.entry.resend_cooldown_seconds == 60
        assert flow.digits == [""] * 6
        assert flow.entry.focused_index == 0
        assert flow.display_error is None
        assert flow.can_resend is False
        assert await flow.resend() is False
        notify.assert_called_once_with("success", RESEND_SUCCESS_MESSAGE)

        # A fresh code auto-submits again
        for index, digit in enumerate("654321"):
            await flow.submit_digit(index, digit)
        assert client.verify_otp.await_count == 2

        flow.unmount()

    async def test_cooldown_counts_down_to_zero(self, tmp_path, clock, instant_sleep):
        auth, _ = await make_challenged_store(tmp_path, clock)
        flow, _, _ = mount_flow(auth, sleep=instant_sleep)

        assert await flow.resend() is True
        for _ in range(200):
            await asyncio.sleep(0)

        assert flow.entry.resend_cooldown_seconds == 0
        assert flow.can_resend is True

    async def test_resend_failure_has_no_cooldown(self, tmp_path, clock):
        message = "Too many attempts. Try again in 50 seconds."
        client = make_client()
        client.resend_otp = AsyncMock(side_effect=ResendError(message, status_code=429))
        auth, _ = await make_challenged_store(tmp_path, clock, client)
        flow, _, notify = mount_flow(auth)

        assert await flow.resend() is False

        assert flow.entry.resend_cooldown_seconds == 0
        assert flow.state is FlowState.ACTIVE
        assert flow.display_error == message
        assert flow.can_resend is True
        notify.assert_called_once_with("error", message)


class TestTeardown:
    async def test_unmount_clears_errors_and_listeners(self, tmp_path, clock):
        client = make_client()
        client.verify_otp = AsyncMock(side_effect=VerificationError(INVALID_OTP_MESSAGE))
        auth, _ = await make_challenged_store(tmp_path, clock, client)
        flow, navigate, _ = mount_flow(auth)
        await flow.handle_paste("123456")
        assert flow.error == INVALID_OTP_MESSAGE
        assert auth.error == INVALID_OTP_MESSAGE

        flow.unmount()

        assert flow.state is FlowState.UNMOUNTED
        assert flow.error is None
        assert auth.error is None
        auth.clear_two_factor_state()
        navigate.assert_not_called()

    async def test_flow_error_takes_precedence_over_store_error(self, tmp_path, clock):
        auth, _ = await make_challenged_store(tmp_path, clock)
        flow, _, _ = mount_flow(auth)

        auth.set_error("Login failed")
        assert flow.display_error == "Login failed"

        flow.error = INVALID_OTP_MESSAGE
        assert flow.display_error == INVALID_OTP_MESSAGE

    async def test_cancel_returns_to_login(self, tmp_path, clock):
        auth, _ = await make_challenged_store(tmp_path, clock)
        flow, navigate, _ = mount_flow(auth)

        flow.cancel()

        assert flow.state is FlowState.CANCELLED
        assert auth.two_factor_pending is None
        navigate.assert_called_once_with(LOGIN_PATH)
