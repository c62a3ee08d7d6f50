import html
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from signbot.api_client import BASE_URL, SessionManager
from signbot.cookies import serialize_header
from signbot.exceptions import (
    InputValidationError,
    SessionExpiredError,
    TransportError,
    UpstreamRejectedError,
)
from signbot.login_manager import extract_csrf_token, is_sign_in_url
from signbot.session_cache import SessionCache

logger = logging.getLogger(__name__)

CODE_LENGTH = 6
BODY_PREVIEW_LENGTH = 200

# EDSquare answers 200 with a JS snippet even when it refuses the code,
# e.g. toastr.error("Le code saisi n&#39;est plus valide")
TOAST_ERROR_RE = re.compile(r'toastr\.error\("([^"]+)"')

SUBMIT_HEADERS = {
    "Accept": "text/javascript, application/javascript, application/ecmascript, application/x-ecmascript, */*; q=0.01",
    "Cache-Control": "no-cache",
    "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
    "Origin": BASE_URL,
    "Pragma": "no-cache",
    "Priority": "u=1, i",
    "Referer": f"{BASE_URL}/apps/classrooms",
    "Sec-Ch-Ua": '"Not(A:Brand";v="8", "Chromium";v="144", "Google Chrome";v="144"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Ch-Ua-Platform": '"macOS"',
    "Sec-Fetch-Dest": "empty",
    "Sec-Fetch-Mode": "cors",
    "Sec-Fetch-Site": "same-origin",
    "X-Requested-With": "XMLHttpRequest",
}


def truncate(text: str, limit: int = BODY_PREVIEW_LENGTH) -> str:
    if len(text) > limit:
        return f"{text[:limit]}..."
    return text


def check_code(code: str):
    if code is None or len(code) != CODE_LENGTH:
        received = 0 if code is None else len(code)
        raise InputValidationError(
            f"code must contain exactly {CODE_LENGTH} digits, got {received} characters"
        )


def build_signature_form(code: str, planning_event_id: str, signature: str,
                         token: Optional[str]) -> List[Tuple[str, str]]:
    """
    Form fields in the order the EDSquare page posts them. The code goes out
    as six separate `secret_code_part_N` fields, one character each.
    """
    fields = []
    if token:
        fields.append(("authenticity_token", token))
    fields.append(("course_user_signature[planning_event_id]", planning_event_id))
    fields.append(("course_user_signature[signature_data]", signature))
    for index, char in enumerate(code, start=1):
        fields.append((f"secret_code_part_{index}", char))
    return fields


@dataclass
class ValidationOutcome:
    success: bool
    message: str
    code: str
    planning_event_id: Optional[str] = None


class CodeValidator:
    SUBMIT_URL = f"{BASE_URL}/apps/course_user_signatures"
    TOKEN_PAGE_URL = f"{BASE_URL}/apps/classrooms"

    def __init__(self, sessions: SessionCache, session_factory: Callable[[], SessionManager] = SessionManager):
        self.sessions = sessions
        self.session_factory = session_factory

    def validate(self, code: str, planning_event_id: str, signature: str, user_id: str) -> ValidationOutcome:
        """
        Submits a 6-digit attendance code with the user's signature.
        On an expired session, reconnects once and tries again.
        """
        check_code(code)
        if not planning_event_id:
            raise InputValidationError("planning_event_id is required")
        if not signature:
            raise InputValidationError("signature is required")

        return self.sessions.with_session_retry(
            user_id, lambda: self.validate_once(code, planning_event_id, signature, user_id)
        )

    def validate_once(self, code: str, planning_event_id: str, signature: str, user_id: str) -> ValidationOutcome:
        check_code(code)
        jar = self.sessions.get_valid_session(user_id)
        cookie_header = serialize_header(jar)

        session = self.session_factory()
        try:
            token = self._fetch_token(session, cookie_header)

            form = build_signature_form(code, planning_event_id, signature, token)
            headers = dict(SUBMIT_HEADERS)
            headers["Cookie"] = cookie_header
            if token:
                headers["X-CSRF-Token"] = token
            else:
                logger.warning("No CSRF token available for the signature request")

            logger.info(
                f"Sending EDSquare signature: planning_event_id={planning_event_id}, "
                f"signature_length={len(signature)}"
            )
            resp = session.post(self.SUBMIT_URL, data=form, headers=headers, allow_redirects=False)
        finally:
            session.close()

        return self._classify(resp.status_code, resp.text or "", code, planning_event_id)

    def _fetch_token(self, session: SessionManager, cookie_header: str) -> Optional[str]:
        """
        Reads a fresh anti-forgery token from the classrooms page.
        Redirects are not followed so that a bounce to sign-in is visible.
        """
        try:
            resp = session.get(self.TOKEN_PAGE_URL, headers={"Cookie": cookie_header}, allow_redirects=False)
        except TransportError as e:
            logger.warning(f"Could not fetch EDSquare CSRF token: {e}")
            return None

        if resp.is_redirect or 300 <= resp.status_code < 400 or is_sign_in_url(resp.url):
            logger.warning("EDSquare session expired: redirected to /users/sign_in")
            raise SessionExpiredError("EDSquare session expired, please reconnect")

        if not resp.ok:
            logger.warning(f"Classrooms page answered {resp.status_code}, continuing without CSRF token")
            return None

        token = extract_csrf_token(resp.text)
        if not token:
            logger.warning("No CSRF token found on /apps/classrooms")
        return token

    @staticmethod
    def _classify(status: int, body: str, code: str, planning_event_id: str) -> ValidationOutcome:
        logger.info(f"EDSquare answered: status={status}, response_length={len(body)}")
        logger.debug(f"EDSquare raw answer: {truncate(body)}")

        if status == 200:
            match = TOAST_ERROR_RE.search(body)
            if match:
                message = html.unescape(match.group(1))
                logger.error(f"EDSquare returned an error despite status 200: {message}")
                raise UpstreamRejectedError(f"EDSquare error: {message}", upstream_status=status, body=truncate(body))
            logger.info("EDSquare code validated")
            return ValidationOutcome(
                success=True,
                message="Code validated",
                code=code,
                planning_event_id=planning_event_id,
            )

        if status == 401:
            logger.error("EDSquare session expired (401)")
            raise SessionExpiredError("EDSquare session expired, please reconnect")

        preview = truncate(body)
        if status == 404:
            raise UpstreamRejectedError(
                f"Invalid code or unknown event, check the code and planning_event_id. Response: {preview}",
                upstream_status=status, body=preview,
            )
        if status == 400:
            raise UpstreamRejectedError(
                f"Invalid request, check the data format. Response: {preview}",
                upstream_status=status, body=preview,
            )
        logger.error(f"Unexpected status code: {status} - Response: {preview}")
        raise UpstreamRejectedError(f"Validation error: {status} - {preview}", upstream_status=status, body=preview)
