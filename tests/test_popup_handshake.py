"""OAuth popup handshake state machine."""

import asyncio

import pytest

from client_fakes import FakeOpener, FakePopup, asgi_api
from novo.client.errors import HandshakeFailed, HandshakeTimeout, PopupBlocked, UserCancelled
from novo.client.popup import HandshakeState, MessageEvent, PopupHandshake
from novo.client.refresh import SessionManager, SessionStatus

LOGIN_URL = "http://testserver/auth/github"
SUCCESS = {
    "success": True,
    "accessToken": "tok",
    "user": {"id": "acct-1", "email": "octo@example.com", "name": "Octo"},
}


def _handshake(opener, **kwargs):
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("timeout", 5.0)
    return PopupHandshake(opener, LOGIN_URL, provider="github", **kwargs)


async def _started(handshake):
    task = asyncio.create_task(handshake.run())
    await asyncio.sleep(0)
    return task


async def test_success_message_resolves_and_cleans_up():
    opener = FakeOpener()
    handshake = _handshake(opener)
    task = await _started(handshake)
    assert handshake.state is HandshakeState.AWAITING_MESSAGE
    assert len(opener.listeners) == 1

    opener.dispatch(SUCCESS)
    state = await task
    assert state.access_token == "tok"
    assert state.email == "octo@example.com"
    assert handshake.state is HandshakeState.RESOLVED
    assert opener.listeners == []
    assert opener.popup.closed


async def test_failure_message_resolves_failure():
    opener = FakeOpener()
    handshake = _handshake(opener)
    task = await _started(handshake)
    opener.dispatch({"success": False, "error": "access denied", "code": "OAUTH_FAILED"})
    with pytest.raises(HandshakeFailed) as excinfo:
        await task
    assert excinfo.value.message == "access denied"
    assert handshake.state is HandshakeState.FAILED


async def test_success_without_token_is_a_failure():
    opener = FakeOpener()
    task = await _started(_handshake(opener))
    opener.dispatch({"success": True, "user": SUCCESS["user"]})
    with pytest.raises(HandshakeFailed) as excinfo:
        await task
    assert excinfo.value.message == "authentication failed"


async def test_first_message_wins():
    opener = FakeOpener()
    handshake = _handshake(opener)
    task = await _started(handshake)
    listener = opener.listeners[0]
    opener.dispatch(SUCCESS)
    # A late message delivered to a stale reference changes nothing
    listener(MessageEvent(data={"success": False, "error": "late"}, origin="http://testserver"))
    assert (await task).access_token == "tok"
    assert handshake.state is HandshakeState.RESOLVED


async def test_closed_popup_is_user_cancellation():
    opener = FakeOpener()
    handshake = _handshake(opener)
    task = await _started(handshake)
    opener.popup.closed = True

    with pytest.raises(UserCancelled):
        await asyncio.wait_for(task, timeout=1.0)
    assert handshake.state is HandshakeState.CANCELLED
    assert opener.listeners == []

    # Stray message after cancellation reaches nobody
    opener.dispatch(SUCCESS)
    assert handshake.state is HandshakeState.CANCELLED


async def test_timeout_force_closes_popup():
    opener = FakeOpener()
    handshake = _handshake(opener, timeout=0.05)
    task = await _started(handshake)
    with pytest.raises(HandshakeTimeout):
        await task
    assert handshake.state is HandshakeState.TIMED_OUT
    assert opener.popup.close_calls == 1
    assert opener.listeners == []


async def test_blocked_popup_fails_before_listening():
    opener = FakeOpener(blocked=True)
    handshake = _handshake(opener)
    with pytest.raises(PopupBlocked):
        await handshake.run()
    assert opener.listeners == []
    assert handshake.state is HandshakeState.BLOCKED


async def test_already_closed_popup_counts_as_blocked():
    popup = FakePopup()
    popup.closed = True
    with pytest.raises(PopupBlocked):
        await _handshake(FakeOpener(popup)).run()


async def test_messages_from_foreign_origins_are_ignored():
    opener = FakeOpener()
    handshake = _handshake(opener, allowed_origins=["http://testserver/"])
    task = await _started(handshake)
    opener.dispatch(SUCCESS, origin="https://evil.example")
    await asyncio.sleep(0)
    assert not task.done()
    opener.dispatch(SUCCESS, origin="http://testserver")
    assert (await task).access_token == "tok"


async def test_any_origin_accepted_without_allow_list():
    opener = FakeOpener()
    task = await _started(_handshake(opener))
    opener.dispatch(SUCCESS, origin="https://elsewhere.example")
    assert (await task).access_token == "tok"


async def test_caller_cancellation_cleans_up():
    opener = FakeOpener()
    handshake = _handshake(opener)
    task = await _started(handshake)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert opener.listeners == []
    assert opener.popup.closed
    assert handshake.state is HandshakeState.CANCELLED


async def test_handshake_is_single_use():
    opener = FakeOpener()
    handshake = _handshake(opener)
    task = await _started(handshake)
    opener.dispatch(SUCCESS)
    await task
    with pytest.raises(RuntimeError):
        await handshake.run()


async def test_repeated_attempts_do_not_leak_listeners():
    opener = FakeOpener()
    for _ in range(3):
        handshake = _handshake(opener, timeout=0.02)
        opener.popup = FakePopup()
        with pytest.raises(HandshakeTimeout):
            await handshake.run()
    assert opener.listeners == []


async def test_session_manager_login_with_provider():
    api = asgi_api()
    manager = SessionManager(api)
    opener = FakeOpener()
    opener.on_open = lambda: asyncio.get_running_loop().call_soon(opener.dispatch, SUCCESS)

    state = await manager.login_with_provider("github", opener)
    assert state.access_token == "tok"
    assert manager.status is SessionStatus.AUTHENTICATED
    assert opener.opened == ["http://testserver/auth/github"]
    await api.aclose()
