import base64
import datetime
import json

import pytest
import requests

from signbot.batch import BatchOrchestrator
from signbot.cookies import Cookie, CookieJar
from signbot.exceptions import InputValidationError, NotFoundError
from signbot.sign import IntraSigner, SignResponse, classify_sign_response, decode_token_expiry

from conftest import make_response

SIGN_URL = "https://intra.epitech.eu/module/2024/B-MAT-100/PAR-1-1/acti-1/event-1/registered?token=12345678"
NOW = datetime.datetime(2025, 3, 10, 9, 0)
EXP = 1741640400  # 2025-03-10 21:00:00 UTC
JWT_HEADER = b'{"alg": "HS256", "typ": "JWT"}'


def make_token(payload) -> str:
    def encode(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")

    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    return f"{encode(JWT_HEADER)}.{encode(body)}.signature"


class StubSigner:
    def __init__(self, responses=None, errors=None):
        self.responses = responses or {}
        self.errors = errors or {}
        self.calls = []

    def sign(self, user, url, shared):
        self.calls.append((user.username, url, shared.names))
        if user.username in self.errors:
            raise self.errors[user.username]
        return self.responses.get(user.username, SignResponse.SUCCESS)


class StubNotifier:
    def __init__(self, webhook_url="https://discord.com/api/webhooks/1/abc"):
        self.webhook_url = webhook_url
        self.payloads = []

    @property
    def enabled(self):
        return bool(self.webhook_url)

    def send_async(self, payload):
        self.payloads.append(payload)


@pytest.fixture
def shared_jar():
    return CookieJar([
        Cookie("PHPSESSID", "shared", domain="intra.epitech.eu"),
        Cookie("user", "someone-else", domain="intra.epitech.eu"),
    ])


@pytest.fixture
def alice(store):
    user = store.create_user("alice", "pw")
    store.set_intra_token(user.id, make_token({"exp": EXP}), datetime.datetime(2025, 3, 10, 21, 0))
    return store.get_user(user.id)


@pytest.fixture
def bob(store):
    return store.create_user("bob", "pw")


def batch_for(store, signer, notifier=None):
    return BatchOrchestrator(store, None, None, signer=signer, sign_notifier=notifier or StubNotifier())


def test_decode_token_expiry() -> None:
    assert decode_token_expiry(make_token({"exp": EXP, "login": "alice@epitech.eu"})) == datetime.datetime(
        2025, 3, 10, 21, 0)


@pytest.mark.parametrize("token, message", [
    ("only.two", "Invalid JWT format"),
    ("a.b.c.d", "Invalid JWT format"),
    (make_token(b"not json"), "Invalid JWT payload"),
    (make_token([1, 2]), "Invalid JWT payload"),
    (make_token({"login": "alice"}), "Expiration time not found in JWT payload"),
    (make_token({"exp": "1741640400"}), "Expiration time is not an integer"),
    (make_token({"exp": 1.5}), "Expiration time is not an integer"),
    (make_token({"exp": True}), "Expiration time is not an integer"),
    (make_token({"exp": 0}), "Invalid expiration time in JWT payload"),
    (make_token({"exp": -5}), "Invalid expiration time in JWT payload"),
])
def test_decode_token_expiry_rejects(token, message) -> None:
    with pytest.raises(InputValidationError, match=message):
        decode_token_expiry(token)


@pytest.mark.parametrize("status, body, expected", [
    (200, '{"message": "ok"}', SignResponse.SUCCESS),
    (200, "", SignResponse.SUCCESS),
    (200, '{"error": "event is closed"}', SignResponse.UNKNOWN_ERROR),
    (200, '{"message": "You are already registered"}', SignResponse.ALREADY_SIGNED),
    (400, "Vous êtes déjà inscrit", SignResponse.ALREADY_SIGNED),
    (302, "", SignResponse.TOKEN_EXPIRED),
    (401, "", SignResponse.TOKEN_EXPIRED),
    (403, '{"error": "forbidden"}', SignResponse.TOKEN_EXPIRED),
    (404, "", SignResponse.UNKNOWN_ERROR),
    (503, "already", SignResponse.SERVICE_UNAVAILABLE),
])
def test_classify_sign_response(status, body, expected) -> None:
    assert classify_sign_response(status, body) is expected


def test_signer_sends_token_over_shared_cookies(alice, shared_jar, http, session_factory) -> None:
    http.add("POST", SIGN_URL, make_response(200, text="{}", url=SIGN_URL))
    signer = IntraSigner(session_factory, clock=lambda: NOW)

    assert signer.sign(alice, SIGN_URL, shared_jar) is SignResponse.SUCCESS

    call = http.calls_to("POST", SIGN_URL)[0]
    assert call.kwargs["headers"]["Cookie"] == f"user={alice.jwt_intra}; PHPSESSID=shared"
    assert call.kwargs["allow_redirects"] is False


def test_signer_skips_the_intra_without_a_usable_token(alice, bob, shared_jar, http, session_factory) -> None:
    late = IntraSigner(session_factory, clock=lambda: datetime.datetime(2025, 3, 11))

    assert late.sign(alice, SIGN_URL, shared_jar) is SignResponse.TOKEN_EXPIRED
    assert IntraSigner(session_factory).sign(bob, SIGN_URL, shared_jar) is SignResponse.TOKEN_NOT_FOUND
    assert http.calls == []


def test_signer_maps_network_failure(alice, shared_jar, http, session_factory) -> None:
    http.add("POST", SIGN_URL, requests.exceptions.ConnectionError("refused"))
    signer = IntraSigner(session_factory, clock=lambda: NOW)

    assert signer.sign(alice, SIGN_URL, shared_jar) is SignResponse.SERVICE_UNAVAILABLE


def test_sign_multi_reports_each_user(store, alice, bob, shared_jar) -> None:
    store.save_shared_cookies(shared_jar)
    signer = StubSigner(responses={"bob": SignResponse.TOKEN_NOT_FOUND})
    notifier = StubNotifier()

    results = batch_for(store, signer, notifier).sign_multi(
        [bob.id.upper(), alice.id, bob.id], SIGN_URL, initiated_by="alice",
    )

    assert [r.to_dict() for r in results] == [
        {"user_id": bob.id, "username": "bob", "response": "tokenNotFound"},
        {"user_id": alice.id, "username": "alice", "response": "success"},
    ]
    assert signer.calls == [("bob", SIGN_URL, ["PHPSESSID", "user"]), ("alice", SIGN_URL, ["PHPSESSID", "user"])]
    assert notifier.payloads == [{"content": (
        "**Signing report**\n"
        "**Started by:** alice\n"
        f"**URL:** {SIGN_URL}\n"
        "✅ **Validated:** alice.\n"
        "❌ **Failed:** bob (Token not found)."
    )}]


def test_sign_multi_isolates_unexpected_errors(store, alice, bob, shared_jar) -> None:
    store.save_shared_cookies(shared_jar)
    signer = StubSigner(errors={"alice": RuntimeError("boom")})

    results = batch_for(store, signer).sign_multi([alice.id, bob.id], SIGN_URL)

    assert [r.response for r in results] == [SignResponse.UNKNOWN_ERROR, SignResponse.SUCCESS]


def test_sign_multi_webhook_only_when_something_was_signed(store, alice, shared_jar) -> None:
    store.save_shared_cookies(shared_jar)
    notifier = StubNotifier(webhook_url="https://hooks.example.org/sign")

    batch_for(store, StubSigner(responses={"alice": SignResponse.ALREADY_SIGNED}), notifier).sign_multi(
        [alice.id], SIGN_URL)
    assert notifier.payloads == []

    batch_for(store, StubSigner(), notifier).sign_multi([alice.id], SIGN_URL)
    assert notifier.payloads == [{
        "event": "sign_multi",
        "initiated_by": "unknown",
        "url": SIGN_URL,
        "validated": ["alice"],
        "failed": [],
    }]


def test_sign_multi_without_webhook_url_sends_nothing(store, alice, shared_jar) -> None:
    store.save_shared_cookies(shared_jar)
    notifier = StubNotifier(webhook_url=None)

    batch_for(store, StubSigner(), notifier).sign_multi([alice.id], SIGN_URL)

    assert notifier.payloads == []


def test_sign_multi_refuses_the_whole_request(store, alice, shared_jar) -> None:
    signer = StubSigner()
    batch = batch_for(store, signer)

    with pytest.raises(NotFoundError, match="No cookies found for today"):
        batch.sign_multi([alice.id], SIGN_URL)

    store.save_shared_cookies(shared_jar)
    with pytest.raises(InputValidationError, match="No users found"):
        batch.sign_multi([alice.id, "00000000-0000-0000-0000-000000000000"], SIGN_URL)
    with pytest.raises(InputValidationError):
        batch.sign_multi([alice.id, "garbage"], SIGN_URL)
    with pytest.raises(InputValidationError, match="url is required"):
        batch.sign_multi([alice.id], "")
    with pytest.raises(InputValidationError, match="user_ids"):
        batch.sign_multi([], SIGN_URL)
    assert signer.calls == []
