"""Error taxonomy for the EDSquare automation layer"""

from typing import Optional


class SignbotError(Exception):
    """Base exception for signbot"""

    status_code = 500


class InputValidationError(SignbotError):
    """Bad caller input (code length, empty field, malformed date or id)"""

    status_code = 400


class NotFoundError(SignbotError):
    """User or signature does not exist"""

    status_code = 404


class NoSavedCredentialsError(SignbotError):
    """Reconnect requested for a user who never saved portal credentials"""

    status_code = 400


class InvalidCredentialsError(SignbotError):
    """The portal refused the login"""

    status_code = 400


class SessionExpiredError(SignbotError):
    """The portal bounced us to the sign-in page or answered 401.

    This is the only kind that triggers an invalidate + reconnect + retry.
    """

    status_code = 404


class UpstreamContractError(SignbotError):
    """The portal answered with something we cannot parse"""

    status_code = 502


class UpstreamRejectedError(SignbotError):
    """Non-success answer from the portal not covered by another kind"""

    status_code = 502

    def __init__(self, message: str, upstream_status: Optional[int] = None, body: str = ""):
        self.upstream_status = upstream_status
        self.body = body
        super().__init__(message)


class TransportError(SignbotError):
    """Network-level failure reaching the portal"""

    status_code = 502
