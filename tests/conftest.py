from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from signbot.api_client import SessionManager
from signbot.cookies import Cookie, CookieJar
from signbot.login_manager import LoginResult
from signbot.store import Store, create_db_engine

EDSQUARE = "https://app.edsquare.fr"
SESSION_VALUE = "a" * 32


def make_response(
    status: int = 200,
    text: str = "",
    url: str = f"{EDSQUARE}/",
    headers: Optional[Dict[str, str]] = None,
    cookies: Optional[List[dict]] = None,
    history: Optional[List[requests.Response]] = None,
) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp._content = text.encode("utf-8")
    resp.encoding = "utf-8"
    resp.url = url
    resp.headers = CaseInsensitiveDict(headers or {})
    for c in cookies or []:
        resp.cookies.set(
            c["name"],
            c["value"],
            domain=c.get("domain", "app.edsquare.fr"),
            path="/",
            expires=c.get("expires"),
            rest=c.get("rest", {}),
        )
    resp.history = history or []
    return resp


@dataclass
class Call:
    method: str
    url: str
    kwargs: dict = field(default_factory=dict)


class FakeHTTP:
    """Stands in for requests.Session: scripted responses per (method, url), every call recorded."""

    def __init__(self):
        self.headers = {}
        self.calls: List[Call] = []
        self._routes: Dict[tuple, List[Union[requests.Response, Callable, Exception]]] = {}

    def add(self, method: str, url: str, *responses):
        self._routes.setdefault((method, url), []).extend(responses)
        return self

    def request(self, method, url, **kwargs):
        self.calls.append(Call(method, url, kwargs))
        queue = self._routes.get((method, url))
        if not queue:
            raise AssertionError(f"unexpected request {method} {url}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(**kwargs)
        return item

    def calls_to(self, method: str, url: str) -> List[Call]:
        return [c for c in self.calls if c.method == method and c.url == url]

    def close(self):
        pass


class FakeLoginManager:
    """Records reconnects and stores a fresh jar, or fails with `error`."""

    def __init__(self, store: Store, jar: Optional[CookieJar] = None, error: Optional[Exception] = None):
        self.store = store
        self.jar = jar if jar is not None else CookieJar([Cookie("_edsquare_session", "fresh" + SESSION_VALUE)])
        self.error = error
        self.calls = []

    def login(self, email, password, user_id):
        self.calls.append((email, password, user_id))
        if self.error is not None:
            raise self.error
        if self.jar:
            self.store.save_cookies(user_id, self.jar)
        return LoginResult(success=True, message="ok")


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch):
    monkeypatch.setattr("signbot.store.BCRYPT_ROUNDS", 4)


@pytest.fixture
def store(tmp_path):
    store = Store(create_db_engine(f"sqlite:///{tmp_path / 'signbot.db'}"))
    store.create_all()
    return store


@pytest.fixture
def user(store):
    return store.create_user("alice", "s3cret")


@pytest.fixture
def http():
    return FakeHTTP()


@pytest.fixture
def session_factory(http):
    return lambda: SessionManager(timeout=5, session=http)


@pytest.fixture
def session_jar():
    return CookieJar([
        Cookie("_edsquare_session", SESSION_VALUE, http_only=True, secure=True),
        Cookie("remember_user_token", "r" * 20),
    ])
