"""
Intra attendance signing.

Every user is signed with the day's shared intra cookie jar plus their own
intra token, sent as the `user` cookie. One user's outcome never depends on
another's.
"""
import base64
import binascii
import datetime
import json
import logging
from enum import Enum
from typing import Callable, Optional

from signbot.api_client import SessionManager
from signbot.cookies import Cookie, CookieJar, serialize_header
from signbot.exceptions import InputValidationError, TransportError
from signbot.store import User, utc_now

logger = logging.getLogger(__name__)

INTRA_DOMAIN = "intra.epitech.eu"
INTRA_TOKEN_COOKIE = "user"


class SignResponse(str, Enum):
    SUCCESS = "success"
    TOKEN_EXPIRED = "tokenExpired"
    TOKEN_NOT_FOUND = "tokenNotFound"
    ALREADY_SIGNED = "alreadySigned"
    UNKNOWN_ERROR = "unknownError"
    SERVICE_UNAVAILABLE = "serviceUnavailable"

    @property
    def message(self) -> str:
        return SIGN_MESSAGES[self]


SIGN_MESSAGES = {
    SignResponse.SUCCESS: "Success",
    SignResponse.TOKEN_EXPIRED: "Token expired",
    SignResponse.TOKEN_NOT_FOUND: "Token not found",
    SignResponse.ALREADY_SIGNED: "Already signed",
    SignResponse.UNKNOWN_ERROR: "Unknown error",
    SignResponse.SERVICE_UNAVAILABLE: "Service unavailable",
}


def decode_token_expiry(token: str) -> datetime.datetime:
    """
    Reads the `exp` claim of an intra JWT, as naive UTC.
    The signature is not verified.
    """
    parts = (token or "").strip().split(".")
    if len(parts) != 3:
        raise InputValidationError("Invalid JWT format")

    payload_b64 = parts[1]
    try:
        raw = base64.urlsafe_b64decode(payload_b64 + "=" * (-len(payload_b64) % 4))
        payload = json.loads(raw)
    except (binascii.Error, ValueError):
        raise InputValidationError("Invalid JWT payload")
    if not isinstance(payload, dict):
        raise InputValidationError("Invalid JWT payload")

    if "exp" not in payload:
        raise InputValidationError("Expiration time not found in JWT payload")
    exp = payload["exp"]
    if isinstance(exp, bool) or not isinstance(exp, int):
        raise InputValidationError("Expiration time is not an integer")
    try:
        if exp <= 0:
            raise ValueError(exp)
        expires = datetime.datetime.fromtimestamp(exp, datetime.timezone.utc)
    except (ValueError, OverflowError, OSError):
        raise InputValidationError("Invalid expiration time in JWT payload")
    return expires.replace(tzinfo=None)


def token_cookie(user: User) -> Optional[Cookie]:
    if not user.jwt_intra:
        return None
    expires = None
    if user.jwt_expires_at is not None:
        expires = int(user.jwt_expires_at.replace(tzinfo=datetime.timezone.utc).timestamp())
    return Cookie(
        name=INTRA_TOKEN_COOKIE,
        value=user.jwt_intra,
        domain=INTRA_DOMAIN,
        expires=expires,
        http_only=True,
        secure=True,
    )


def classify_sign_response(status: int, body: str) -> SignResponse:
    if status >= 500:
        return SignResponse.SERVICE_UNAVAILABLE
    lowered = (body or "").lower()
    if "already" in lowered or "déjà" in lowered:
        return SignResponse.ALREADY_SIGNED
    if status in (401, 403) or 300 <= status < 400:
        return SignResponse.TOKEN_EXPIRED
    if 200 <= status < 300:
        try:
            payload = json.loads(body) if body else None
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("error"):
            return SignResponse.UNKNOWN_ERROR
        return SignResponse.SUCCESS
    return SignResponse.UNKNOWN_ERROR


class IntraSigner:
    def __init__(
        self,
        session_factory: Callable[[], SessionManager] = SessionManager,
        clock: Callable[[], datetime.datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.clock = clock

    def sign(self, user: User, url: str, shared: CookieJar) -> SignResponse:
        cookie = token_cookie(user)
        if cookie is None:
            logger.warning(f"No intra token for {user.username} ({user.id})")
            return SignResponse.TOKEN_NOT_FOUND
        if user.jwt_expires_at is not None and user.jwt_expires_at <= self.clock():
            logger.warning(f"Intra token of {user.username} expired at {user.jwt_expires_at}")
            return SignResponse.TOKEN_EXPIRED

        # The user's own token replaces any `user` cookie in the shared jar
        jar = CookieJar([cookie]).merge(shared)
        session = self.session_factory()
        try:
            resp = session.post(
                url,
                headers={"Cookie": serialize_header(jar), "Accept": "application/json"},
                allow_redirects=False,
            )
        except TransportError as e:
            logger.error(f"Intra unreachable while signing {user.username}: {e}")
            return SignResponse.SERVICE_UNAVAILABLE
        finally:
            session.close()

        outcome = classify_sign_response(resp.status_code, resp.text or "")
        logger.info(f"Intra sign for {user.username} ({user.id}): {resp.status_code} -> {outcome.value}")
        return outcome
