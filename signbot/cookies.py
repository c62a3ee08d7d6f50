import time
from dataclasses import dataclass, asdict
from typing import Dict, Iterable, Iterator, List, Optional

import requests

DEFAULT_DOMAIN = "app.edsquare.fr"


@dataclass(frozen=True)
class Cookie:
    name: str
    value: str
    domain: str = DEFAULT_DOMAIN
    path: str = "/"
    expires: Optional[int] = None
    http_only: bool = False
    secure: bool = False
    same_site: Optional[str] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("cookie name must not be empty")

    def to_header_value(self) -> str:
        return f"{self.name}={self.value}"

    def to_dict(self) -> dict:
        # Same keys as a browser cookie export
        data = asdict(self)
        data["httpOnly"] = data.pop("http_only")
        data["sameSite"] = data.pop("same_site")
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Cookie":
        expires = data.get("expires")
        return cls(
            name=data["name"],
            value=data.get("value", ""),
            domain=data.get("domain") or DEFAULT_DOMAIN,
            path=data.get("path") or "/",
            expires=int(expires) if expires is not None else None,
            http_only=bool(data.get("httpOnly", data.get("http_only", False))),
            secure=bool(data.get("secure", False)),
            same_site=data.get("sameSite", data.get("same_site")),
        )


class CookieJar:
    """
    Immutable snapshot of the cookies of one portal session, keyed by name.

    Insertion order is kept so the Cookie header is identical on every call.
    """

    def __init__(self, cookies: Iterable[Cookie] = ()):
        by_name: Dict[str, Cookie] = {}
        for cookie in cookies:
            # Last write wins on duplicate names
            by_name[cookie.name] = cookie
        self._cookies = tuple(by_name.values())

    def __iter__(self) -> Iterator[Cookie]:
        return iter(self._cookies)

    def __len__(self) -> int:
        return len(self._cookies)

    def __bool__(self) -> bool:
        return bool(self._cookies)

    def __eq__(self, other) -> bool:
        return isinstance(other, CookieJar) and self._cookies == other._cookies

    def __repr__(self) -> str:
        return f"CookieJar({[c.name for c in self._cookies]})"

    def get(self, name: str) -> Optional[Cookie]:
        for cookie in self._cookies:
            if cookie.name == name:
                return cookie
        return None

    @property
    def names(self) -> List[str]:
        return [c.name for c in self._cookies]

    def merge(self, other: "CookieJar") -> "CookieJar":
        """Append cookies from `other` whose name is not present yet (first occurrence wins)."""
        merged = list(self._cookies)
        known = set(self.names)
        for cookie in other:
            if cookie.name not in known:
                merged.append(cookie)
                known.add(cookie.name)
        return CookieJar(merged)

    def to_dicts(self) -> List[dict]:
        return [c.to_dict() for c in self._cookies]

    @classmethod
    def from_dicts(cls, items: Iterable[dict]) -> "CookieJar":
        return cls(Cookie.from_dict(item) for item in items)

    @classmethod
    def from_response_chain(cls, response: requests.Response) -> "CookieJar":
        """
        Collects the cookies set by every hop of a (possibly redirected) response.

        Redirect hops come first, so a cookie re-set by a later hop replaces
        the earlier value. Only headers are read; the body stays untouched.
        """
        cookies = []
        for hop in list(response.history) + [response]:
            for c in hop.cookies:
                if not c.name:
                    continue
                cookies.append(Cookie(
                    name=c.name,
                    value=c.value or "",
                    domain=(c.domain or DEFAULT_DOMAIN).lstrip("."),
                    path=c.path or "/",
                    expires=int(c.expires) if c.expires is not None else None,
                    http_only=c.has_nonstandard_attr("HttpOnly") or c.has_nonstandard_attr("httponly"),
                    secure=bool(c.secure),
                    same_site=c.get_nonstandard_attr("SameSite") or c.get_nonstandard_attr("samesite"),
                ))
        return cls(cookies)


def serialize_header(jar: CookieJar) -> str:
    """Value for the `Cookie:` request header."""
    return "; ".join(c.to_header_value() for c in jar)


def is_valid(cookie: Cookie, now: Optional[float] = None) -> bool:
    if cookie.expires is None:
        return True
    if now is None:
        now = time.time()
    return cookie.expires > now


def filter_valid(jar: CookieJar, now: Optional[float] = None) -> CookieJar:
    """Drops expired cookies. An empty result means there is no usable session."""
    if now is None:
        now = time.time()
    return CookieJar(c for c in jar if is_valid(c, now))
