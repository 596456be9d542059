"""Test doubles shared by the client tests."""

from typing import Callable, List, Optional

import httpx

from novo import app as app_module
from novo.client.api import AuthApi
from novo.client.config import ClientSettings
from novo.client.popup import MessageEvent


def client_settings(**overrides) -> ClientSettings:
    values = {
        "api_base_url": "http://testserver",
        "popup_poll_interval_seconds": 0.01,
        "popup_timeout_seconds": 5.0,
    }
    values.update(overrides)
    return ClientSettings(**values)


def asgi_api(**overrides) -> AuthApi:
    """AuthApi talking to the real app in-process."""
    return AuthApi(client_settings(**overrides), transport=httpx.ASGITransport(app=app_module.app))


def mock_api(handler: Callable, **overrides) -> AuthApi:
    return AuthApi(client_settings(**overrides), transport=httpx.MockTransport(handler))


def envelope_error(status: int, code: str, message: str = "rejected") -> httpx.Response:
    return httpx.Response(
        status, json={"status": "error", "error": {"code": code, "message": message}}
    )


def auth_ok(access_token: str, email: str = "ada@example.com") -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "status": "ok",
            "data": {
                "access_token": access_token,
                "token_type": "bearer",
                "expires_at": "2030-01-01T00:00:00+00:00",
                "user": {"id": "acct-1", "email": email, "name": "Ada"},
            },
        },
    )


class FakePopup:
    def __init__(self) -> None:
        self.closed = False
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True


class FakeOpener:
    def __init__(self, popup: Optional[FakePopup] = None, *, blocked: bool = False) -> None:
        self.popup = popup or FakePopup()
        self.blocked = blocked
        self.listeners: List[Callable[[MessageEvent], None]] = []
        self.opened: List[str] = []
        self.on_open: Optional[Callable[[], None]] = None

    def open_popup(self, url: str, name: str, features: str):
        self.opened.append(url)
        if self.blocked:
            return None
        if self.on_open is not None:
            self.on_open()
        return self.popup

    def add_message_listener(self, listener) -> None:
        self.listeners.append(listener)

    def remove_message_listener(self, listener) -> None:
        self.listeners.remove(listener)

    def dispatch(self, data, origin: str = "http://testserver") -> None:
        for listener in list(self.listeners):
            listener(MessageEvent(data=data, origin=origin))
