import base64
import datetime
import json

import pytest

from signbot.config import Settings
from signbot.cookies import Cookie, CookieJar
from signbot.main import build_services, main

from conftest import EDSQUARE, make_response


@pytest.fixture
def services(store, session_factory):
    settings = Settings(database_url="sqlite://", register_key="join-us", admin_key="root-key")
    return build_services(settings, store=store, session_factory=session_factory)


def run(capsys, services, *argv):
    code = main(list(argv), services=services)
    return code, json.loads(capsys.readouterr().out)


def test_add_user_requires_register_key(capsys, services) -> None:
    code, out = run(capsys, services, "add-user", "--username", "alice", "--password", "pw")
    assert code == 2
    assert out == {"error": "invalid register key", "status": 400}

    code, out = run(capsys, services, "add-user", "--username", "alice", "--password", "pw",
                    "--register-key", "join-us")
    assert code == 0
    assert out["username"] == "alice"
    assert services.store.get_user(out["id"]) is not None


def test_signature_and_status(capsys, services, user, tmp_path) -> None:
    signature_file = tmp_path / "sig.txt"
    signature_file.write_text("data:image/png;base64,AAAA\n", encoding="utf-8")

    code, out = run(capsys, services, "add-signature", "--user", user.id, "--file", str(signature_file))
    assert code == 0

    code, out = run(capsys, services, "status", "--user", user.id)
    assert out == {
        "has_signature": True,
        "has_cookies": False,
        "has_saved_credentials": False,
        "is_ready": False,
    }

    code, out = run(capsys, services, "signatures", "--user", user.id)
    assert out["signatures"][0]["length"] == len("data:image/png;base64,AAAA")


def test_validate_without_signature(capsys, services, user) -> None:
    code, out = run(capsys, services, "validate", "--user", user.id, "--code", "123456", "--event", "789")

    assert code == 1
    assert out["status"] == 404


def test_validate_with_short_code(capsys, services, store, user, http) -> None:
    store.add_signature(user.id, "data:x")

    code, out = run(capsys, services, "validate", "--user", user.id, "--code", "123", "--event", "789")

    assert code == 2
    assert "exactly 6 digits" in out["error"]
    assert http.calls == []


def test_validate_multi_with_overrides(capsys, services, store, session_jar, http) -> None:
    alice = store.create_user("alice", "pw")
    bob = store.create_user("bob", "pw")
    for account in (alice, bob):
        store.add_signature(account.id, "data:x")
        store.save_cookies(account.id, session_jar)
    http.add("GET", f"{EDSQUARE}/apps/classrooms", make_response(200, url=f"{EDSQUARE}/apps/classrooms"))
    http.add(
        "POST", f"{EDSQUARE}/apps/course_user_signatures",
        make_response(200, text="ok"),
        make_response(200, text='toastr.error("Code expir&eacute;");'),
    )

    code, out = run(
        capsys, services, "validate-multi",
        "--users", f"{alice.id},{bob.id}",
        "--code", "123456",
        "--event", "789",
        "--user-code", f"{bob.id}=654321",
    )

    assert code == 0
    assert out["global_success"] is False
    assert [r["success"] for r in out["results"]] == [True, False]
    assert out["results"][1]["message"] == "EDSquare error: Code expiré"
    posts = http.calls_to("POST", f"{EDSQUARE}/apps/course_user_signatures")
    assert [v for k, v in posts[1].kwargs["data"] if k.startswith("secret_code_part_")] == list("654321")


def test_bad_pair_option(capsys, services, user) -> None:
    code, out = run(capsys, services, "validate-multi", "--users", user.id, "--code", "123456",
                    "--event", "789", "--user-code", "nope")

    assert code == 2
    assert "USER_ID=VALUE" in out["error"]


def test_planning_command_rejects_bad_date(capsys, services, user) -> None:
    code, out = run(capsys, services, "planning", "--user", user.id, "--date", "2025/03/10")

    assert code == 2


def test_delete_user_needs_admin_key(capsys, services, user) -> None:
    code, out = run(capsys, services, "delete-user", "--user", user.id, "--admin-key", "wrong")
    assert code == 2

    code, out = run(capsys, services, "delete-user", "--user", user.id, "--admin-key", "root-key")
    assert code == 0
    assert services.store.get_user(user.id) is None

    code, out = run(capsys, services, "delete-user", "--user", user.id, "--admin-key", "root-key")
    assert code == 1
    assert out["status"] == 404


SIGN_URL = "https://intra.epitech.eu/module/2024/B-MAT-100/PAR-1-1/acti-1/event-1/registered?token=12345678"
FAR_FUTURE = 4102444800  # 2100-01-01 UTC


def intra_token(exp: int) -> str:
    payload = base64.urlsafe_b64encode(json.dumps({"exp": exp}).encode()).decode().rstrip("=")
    return f"eyJhbGciOiJIUzI1NiJ9.{payload}.sig"


def test_users_can_be_named_instead_of_ids(capsys, services, user) -> None:
    code, out = run(capsys, services, "status", "--user", "alice")
    assert code == 0

    code, out = run(capsys, services, "status", "--user", "nobody")
    assert code == 2
    assert "invalid user id" in out["error"]


def test_update_user(capsys, services, user) -> None:
    code, out = run(capsys, services, "update-user", "--user", "alice", "--new-password", "n3w",
                    "--old-password", "wrong")
    assert code == 1
    assert out == {"error": "Old password is incorrect", "status": 400}

    code, out = run(capsys, services, "update-user", "--user", user.id, "--username", "alicia",
                    "--new-password", "n3w", "--old-password", "s3cret")
    assert code == 0
    assert out == {"id": user.id, "username": "alicia"}
    assert services.store.get_user(user.id).verify_password("n3w")

    code, out = run(capsys, services, "update-user", "--user", "alicia")
    assert code == 2


def test_set_intra_token(capsys, services, user) -> None:
    code, out = run(capsys, services, "set-intra-token", "--user", user.id, "--token", intra_token(1741640400))
    assert code == 0
    assert out["jwt_expires_at"] == "2025-03-10T21:00:00"
    assert services.store.get_user(user.id).jwt_intra == intra_token(1741640400)

    code, out = run(capsys, services, "set-intra-token", "--user", user.id, "--token", "garbage")
    assert code == 2
    assert out["error"] == "Invalid JWT format"


def test_sign_flow(capsys, services, store, user, http, tmp_path) -> None:
    bob = store.create_user("bob", "pw")
    store.set_intra_token(user.id, intra_token(FAR_FUTURE), datetime.datetime(2100, 1, 1))

    code, out = run(capsys, services, "sign-status")
    assert code == 1
    assert out == {"error": "No cookies found for today", "status": 404}

    cookie_file = tmp_path / "intra.json"
    cookie_file.write_text(json.dumps({"cookies": [
        {"name": "PHPSESSID", "value": "shared", "domain": "intra.epitech.eu"},
    ]}), encoding="utf-8")
    code, out = run(capsys, services, "save-sign-cookies", "--file", str(cookie_file))
    assert out == {"saved": ["PHPSESSID"]}
    code, out = run(capsys, services, "sign-status")
    assert code == 0

    http.add("POST", SIGN_URL, make_response(200, text="{}", url=SIGN_URL))
    code, out = run(capsys, services, "sign", "--users", f"{user.id},{bob.id}", "--url", SIGN_URL,
                    "--initiated-by", "alice")

    assert code == 0
    assert [(r["username"], r["response"]) for r in out["results"]] == [
        ("alice", "success"),
        ("bob", "tokenNotFound"),
    ]
    assert len(http.calls_to("POST", SIGN_URL)) == 1


def test_sign_with_unknown_user_is_refused(capsys, services, store, user, http) -> None:
    store.save_shared_cookies(CookieJar([Cookie("PHPSESSID", "shared", domain="intra.epitech.eu")]))

    code, out = run(capsys, services, "sign", "--users", f"{user.id},00000000-0000-0000-0000-000000000000",
                    "--url", SIGN_URL)

    assert code == 2
    assert out["error"] == "No users found for the provided ids"
    assert http.calls == []
