import logging
from typing import Optional

import requests

from signbot.config import DEFAULT_HTTP_TIMEOUT
from signbot.exceptions import TransportError

logger = logging.getLogger(__name__)

BASE_URL = "https://app.edsquare.fr"

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/144.0.0.0 Safari/537.36"
)

DEFAULT_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "*/*",
    "Accept-Language": "fr-FR,fr;q=0.9,en-US;q=0.8,en;q=0.7",
}


class SessionManager:
    """
    Thin wrapper around one requests.Session.

    Every call gets the browser-like default headers and a timeout, and
    network failures surface as TransportError instead of requests exceptions.
    The underlying session keeps its own cookie store, which the login flow
    relies on between the sign-in GET and POST.
    """

    def __init__(self, timeout: float = DEFAULT_HTTP_TIMEOUT, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)

    def request(self, method: str, url: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            return self.session.request(method, url, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.error(f"{method} {url} failed: {e}")
            raise TransportError(f"could not reach {url}: {e}") from e

    def get(self, url: str, **kwargs) -> requests.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs) -> requests.Response:
        return self.request("POST", url, **kwargs)

    def close(self):
        self.session.close()
