from __future__ import annotations

import asyncio

import pytest

from conftest import FakeBackend, make_harness

from authflow.auth.errors import FlowBusyError
from authflow.auth.models import AuthState, AuthStatus, Provider, StateToken, VerifiedIdentity, WalletSession
from authflow.auth.session import consume_just_logged_in

CONNECTED = WalletSession(address="0x0000000000000000000000000000000000000042", is_connected=True)


def test_initial_state_is_idle() -> None:
    h = make_harness()
    st = h.orch.state
    assert st == AuthState(status=AuthStatus.IDLE, provider=Provider.NONE, error=None)
    assert st.phase == "idle"
    assert not st.in_flight


def test_session_establisher_gets_exact_identity_and_default_target() -> None:
    backend = FakeBackend(identity=VerifiedIdentity(token="t1", user={"id": "u1"}))
    h = make_harness(backend=backend)

    async def _run() -> None:
        await h.orch.begin_wallet()
        await h.orch.on_wallet_session(CONNECTED)

    asyncio.run(_run())

    assert (h.store.token, h.store.user) == ("t1", {"id": "u1"})
    assert h.navigator.history[-1] == ("replace", "/")
    assert h.orch.state.phase == "authenticated"


def test_already_authenticated_short_circuits_to_navigation() -> None:
    h = make_harness()
    asyncio.run(h.store.login("t0", {"id": "u0"}))

    assert h.orch.enter("/monitor") is True
    assert h.orch.state.status == AuthStatus.AUTHENTICATED
    assert h.navigator.history == [("replace", "/monitor")]
    assert h.backend.exchange_calls == []
    # No fresh login happened, so no welcome marker.
    assert consume_just_logged_in(h.flags) is False


def test_enter_without_session_does_nothing() -> None:
    h = make_harness()
    assert h.orch.enter("/monitor") is False
    assert h.navigator.history == []


def test_oauth_start_rejected_while_wallet_in_flight() -> None:
    h = make_harness()
    asyncio.run(h.orch.begin_wallet())
    with pytest.raises(FlowBusyError):
        h.orch.begin_authorization("google")
    assert h.orch.state.phase == "wallet_in_progress"
    assert h.navigator.history == []


def test_callback_rejected_while_wallet_in_flight() -> None:
    h = make_harness()
    asyncio.run(h.orch.begin_wallet())
    with pytest.raises(FlowBusyError):
        asyncio.run(h.orch.handle_callback("code-1", None))
    assert h.backend.exchange_calls == []


def test_unanswered_redirect_does_not_block_a_new_attempt() -> None:
    h = make_harness()
    h.orch.begin_authorization("google")
    assert h.orch.state.status == AuthStatus.AWAITING_CALLBACK

    asyncio.run(h.orch.begin_wallet())
    assert h.orch.state.phase == "wallet_in_progress"


def test_error_is_cleared_by_a_new_attempt() -> None:
    h = make_harness(connectors=[])
    asyncio.run(h.orch.begin_wallet())
    assert h.orch.state.status == AuthStatus.ERROR

    h.orch.begin_authorization("github", "/alerts")
    assert h.orch.state == AuthState(status=AuthStatus.AWAITING_CALLBACK, provider=Provider.GITHUB)


def test_cancel_unanswered_redirect() -> None:
    h = make_harness()
    h.orch.begin_authorization("google")
    assert asyncio.run(h.orch.cancel()) is True
    assert h.orch.state.status == AuthStatus.IDLE
    assert asyncio.run(h.orch.cancel()) is False


def test_listeners_see_every_transition_and_can_unsubscribe() -> None:
    h = make_harness()
    seen = []
    unsubscribe = h.orch.subscribe(lambda st: seen.append(st.status))

    def _broken(_st: AuthState) -> None:
        raise RuntimeError("listener bug")

    h.orch.subscribe(_broken)
    state = h.codec.encode(StateToken(nonce="n", provider="google"))
    asyncio.run(h.orch.handle_callback("code-1", state))

    assert seen == [AuthStatus.EXCHANGING, AuthStatus.AUTHENTICATED]
    unsubscribe()
    asyncio.run(h.orch.cancel())
    h.orch.begin_authorization("google")
    assert seen == [AuthStatus.EXCHANGING, AuthStatus.AUTHENTICATED]


def test_unexpected_exception_becomes_generic_error() -> None:
    backend = FakeBackend(exchange_error=RuntimeError("boom"))
    h = make_harness(backend=backend)
    assert asyncio.run(h.orch.handle_callback("code-1", None)) is None
    assert h.orch.state.status == AuthStatus.ERROR
    assert h.orch.state.error == "Authentication failed. Please try again."


def test_just_logged_in_flag_is_consumed_once() -> None:
    h = make_harness()
    asyncio.run(h.orch.handle_callback("code-1", None))
    assert consume_just_logged_in(h.flags) is True
    assert consume_just_logged_in(h.flags) is False


@pytest.mark.asyncio
async def test_login_url_with_code_completes_callback() -> None:
    h = make_harness()
    state = h.codec.encode(StateToken(nonce="n", provider="github", redirect="/monitor/7"))
    target = await h.orch.handle_login_url(f"http://app.test/login?code=abc&state={state}")
    assert target == "/monitor/7"
    assert h.backend.exchange_calls == [("github", "abc", "http://app.test/login")]


@pytest.mark.asyncio
async def test_login_url_when_signed_in_skips_callback() -> None:
    h = make_harness()
    await h.store.login("t0", {"id": "u0"})
    target = await h.orch.handle_login_url("http://app.test/login?redirect=/settings&code=abc")
    assert target == "/settings"
    assert h.backend.exchange_calls == []


@pytest.mark.asyncio
async def test_login_url_with_provider_error_returns_to_idle() -> None:
    h = make_harness()
    h.orch.begin_authorization("google")
    target = await h.orch.handle_login_url("http://app.test/login?error=access_denied&state=x")
    assert target is None
    assert h.orch.state.status == AuthStatus.IDLE
    assert h.orch.state.error == "Sign-in was cancelled"


@pytest.mark.asyncio
async def test_login_url_without_parameters_is_a_no_op() -> None:
    h = make_harness()
    assert await h.orch.handle_login_url("http://app.test/login") is None
    assert h.orch.state.status == AuthStatus.IDLE


@pytest.mark.asyncio
async def test_close_releases_guards_and_wallet() -> None:
    h = make_harness()
    await h.orch.handle_callback("code-1", None)
    await h.orch.begin_wallet()
    await h.orch.close()

    assert h.connector.disconnect_calls == 1
    assert h.orch.wallet.requested is False
    assert h.orch.oauth.dedup.try_claim("code-1") is True
