import logging
from dataclasses import dataclass
from typing import Callable, Optional

import requests
from bs4 import BeautifulSoup

from signbot.api_client import BASE_URL, SessionManager
from signbot.cookies import CookieJar
from signbot.exceptions import (
    InvalidCredentialsError,
    NoSavedCredentialsError,
    UpstreamContractError,
    UpstreamRejectedError,
)
from signbot.store import Store

logger = logging.getLogger(__name__)

# A session cookie shorter than this is not a real session token
MIN_SESSION_COOKIE_LENGTH = 10

LOGIN_FAILURE_PHRASES = (
    "Invalid email or password",
    "Email ou mot de passe invalide",
    "Email ou mot de passe incorrect",
)


def extract_csrf_token(html: str) -> Optional[str]:
    """
    Finds the Rails anti-forgery token in a page.

    Looks for the hidden `authenticity_token` form field first, then for the
    `<meta name="csrf-token">` tag every layout carries.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    token_input = soup.find("input", {"name": "authenticity_token"})
    if token_input and token_input.get("value"):
        return token_input["value"]
    meta = soup.find("meta", {"name": "csrf-token"})
    if meta and meta.get("content"):
        return meta["content"]
    return None


def is_sign_in_url(url: Optional[str]) -> bool:
    return bool(url) and "sign_in" in url


@dataclass
class LoginResult:
    success: bool
    message: str


class LoginManager:
    LOGIN_URL = f"{BASE_URL}/users/sign_in"
    HOME_URL = f"{BASE_URL}/home"

    def __init__(self, store: Store, session_factory: Callable[[], SessionManager] = SessionManager):
        self.store = store
        self.session_factory = session_factory

    def login(self, email: str, password: str, user_id: str) -> LoginResult:
        """
        Logs into EDSquare like a browser would and saves the resulting cookies
        for today, plus the credentials for later automatic reconnects.
        1. GET sign-in page -> anti-forgery token
        2. POST credentials (cookies captured from every redirect hop)
        3. GET /home to make sure the session is real
        """
        logger.info(f"Logging into EDSquare as {email}")
        session = self.session_factory()
        try:
            token = self._fetch_login_token(session)
            login_cookies = self._post_credentials(session, token, email, password)
            home_cookies = self._check_home(session)
        finally:
            session.close()

        jar = login_cookies.merge(home_cookies)
        if not jar:
            raise InvalidCredentialsError("cookies invalid: no cookie received after login")
        if not any(len(c.value) > MIN_SESSION_COOKIE_LENGTH for c in jar):
            raise InvalidCredentialsError("cookies invalid: no session cookie received after login")

        logger.info(f"EDSquare login OK, {len(jar)} cookies: {jar.names}")
        self.store.save_cookies(user_id, jar)
        try:
            self.store.save_credentials(user_id, email, password)
        except Exception as e:
            logger.warning(f"Login OK but could not save EDSquare credentials: {e}")

        return LoginResult(success=True, message="EDSquare login successful, cookies saved")

    def login_with_saved(self, user_id: str) -> LoginResult:
        credentials = self.store.get_credentials(user_id)
        if credentials is None:
            raise NoSavedCredentialsError("no saved EDSquare credentials for this user")
        email, password = credentials
        return self.login(email, password, user_id)

    def _fetch_login_token(self, session: SessionManager) -> str:
        resp = session.get(self.LOGIN_URL)
        if not resp.ok:
            raise UpstreamRejectedError(
                f"failed to fetch login page: {resp.status_code}", upstream_status=resp.status_code
            )
        token = extract_csrf_token(resp.text)
        if not token:
            raise UpstreamContractError("anti-forgery token not found on login page")
        return token

    def _post_credentials(self, session: SessionManager, token: str, email: str, password: str) -> CookieJar:
        payload = [
            ("authenticity_token", token),
            ("user[email]", email),
            ("user[password]", password),
            ("user[remember_me]", "0"),
        ]
        resp = session.post(
            self.LOGIN_URL,
            data=payload,
            headers={"Origin": BASE_URL, "Referer": f"{BASE_URL}/"},
        )
        # Cookies first: the body may only be read once
        cookies = CookieJar.from_response_chain(resp)

        if not self._looks_logged_in(resp):
            logger.warning(f"EDSquare login refused: status={resp.status_code}, url={resp.url}")
            raise InvalidCredentialsError("login failed: invalid credentials")
        return cookies

    @staticmethod
    def _looks_logged_in(resp: requests.Response) -> bool:
        redirected = bool(resp.history) or resp.status_code in (302, 303) or "/home" in (resp.url or "")
        if not redirected:
            return False
        if is_sign_in_url(resp.url):
            return False
        body = resp.text or ""
        return not any(phrase in body for phrase in LOGIN_FAILURE_PHRASES)

    def _check_home(self, session: SessionManager) -> CookieJar:
        resp = session.get(self.HOME_URL)
        locations = [hop.headers.get("Location", "") for hop in list(resp.history) + [resp]]

        if (not resp.ok
                or is_sign_in_url(resp.url)
                or any(is_sign_in_url(location) for location in locations)):
            logger.warning(
                f"EDSquare login not confirmed: home_status={resp.status_code}, "
                f"home_url={resp.url}, locations={locations}"
            )
            raise InvalidCredentialsError("login failed: invalid credentials or session expired")

        logger.debug(f"Home check OK (status: {resp.status_code}, url: {resp.url})")
        return CookieJar.from_response_chain(resp)
