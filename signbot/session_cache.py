import logging
import time
from typing import Callable, Dict, Iterable, List, TypeVar

from signbot.cookies import CookieJar, filter_valid
from signbot.exceptions import (
    InputValidationError,
    NoSavedCredentialsError,
    SessionExpiredError,
    UpstreamContractError,
)
from signbot.login_manager import LoginManager
from signbot.store import Store

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionCache:
    """
    Hands out today's EDSquare cookie jar for a user, reconnecting with the
    saved credentials when the stored jar is missing or fully expired.
    """

    def __init__(self, store: Store, login_manager: LoginManager, clock: Callable[[], float] = time.time):
        self.store = store
        self.login_manager = login_manager
        self.clock = clock

    def get_cached(self, user_id: str) -> CookieJar:
        """Today's jar minus expired cookies; empty when there is nothing usable."""
        jar = self.store.get_cookies(user_id)
        if jar is None:
            logger.debug(f"No EDSquare cookies stored today for user {user_id}")
            return CookieJar()
        valid = filter_valid(jar, self.clock())
        if len(valid) < len(jar):
            logger.info(f"{len(valid)} of {len(jar)} EDSquare cookies still valid for user {user_id}")
        return valid

    def get_valid_session(self, user_id: str) -> CookieJar:
        jar = self.get_cached(user_id)
        if jar:
            return jar

        logger.info(f"No valid EDSquare session for {user_id}, reconnecting with saved credentials")
        self.reconnect(user_id)

        jar = self.get_cached(user_id)
        if not jar:
            raise UpstreamContractError("reconnect succeeded but no session cookie produced")
        return jar

    def reconnect(self, user_id: str):
        credentials = self.store.get_credentials(user_id)
        if credentials is None:
            raise NoSavedCredentialsError("no saved EDSquare credentials for this user")
        email, password = credentials
        return self.login_manager.login(email, password, user_id)

    def invalidate(self, user_id: str):
        self.store.clear_cookies(user_id)

    def with_session_retry(self, user_id: str, operation: Callable[[], T]) -> T:
        """
        Runs `operation`; if the portal says the session expired, drops today's
        cookies, reconnects once and runs it one more time.

        When the invalidation or the reconnect fails, the original session
        error is raised, not the reconnect error.
        """
        try:
            return operation()
        except SessionExpiredError as err:
            logger.info(f"EDSquare session expired for {user_id}, clearing cookies and reconnecting")
            try:
                self.invalidate(user_id)
            except Exception as clear_err:
                logger.warning(f"Could not clear EDSquare cookies for {user_id}: {clear_err}")
                raise err
            try:
                self.reconnect(user_id)
            except Exception as reconnect_err:
                logger.warning(f"EDSquare reconnect failed after session expiry for {user_id}: {reconnect_err}")
                raise err
            # The retry must not trigger a second login
            if not self.get_cached(user_id):
                logger.warning(f"EDSquare reconnect for {user_id} left no valid cookie, not retrying")
                raise err
        return operation()

    # ------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------
    def status(self, user_id: str) -> Dict[str, bool]:
        has_signature = bool(self.store.get_signatures(user_id))
        has_cookies = bool(self.get_cached(user_id))
        has_saved_credentials = self.store.get_credentials(user_id) is not None
        if has_saved_credentials and not has_cookies:
            logger.info(f"Saved EDSquare credentials for {user_id}: automatic reconnect possible")
        return {
            "has_signature": has_signature,
            "has_cookies": has_cookies,
            "has_saved_credentials": has_saved_credentials,
            "is_ready": has_signature and (has_cookies or has_saved_credentials),
        }

    def eligible_users(self) -> List[Dict[str, str]]:
        """Users with a signature and either valid cookies or saved credentials."""
        eligible = []
        for user in self.store.get_all_users():
            status = self.status(user.id)
            if status["is_ready"]:
                eligible.append({"id": user.id, "username": user.username})
        eligible.sort(key=lambda u: u["username"].lower())
        return eligible

    def save_cookies(self, user_id: str, cookie_dicts: Iterable[dict]) -> CookieJar:
        """Stores a browser cookie export as today's jar."""
        try:
            jar = CookieJar.from_dicts(cookie_dicts)
        except (KeyError, TypeError, ValueError) as e:
            raise InputValidationError(f"invalid cookie payload: {e}")
        if not jar:
            raise InputValidationError("cookie payload is empty")
        self.store.save_cookies(user_id, jar)
        return jar
