import datetime
import json
import logging
from dataclasses import dataclass, asdict
from typing import Callable, List, Optional

from signbot.api_client import BASE_URL, SessionManager
from signbot.cookies import serialize_header
from signbot.exceptions import (
    InputValidationError,
    SessionExpiredError,
    UpstreamContractError,
    UpstreamRejectedError,
)
from signbot.login_manager import is_sign_in_url
from signbot.session_cache import SessionCache
from signbot.state import TTLCache, planning_cache_key

logger = logging.getLogger(__name__)

# EDSquare's planning runs on Paris winter time
PLANNING_UTC_OFFSET = "+01:00"


@dataclass(frozen=True)
class PlanningEvent:
    id: int
    title: str
    start: str
    end: str
    target: Optional[str] = None
    event_type: Optional[str] = None
    registrable: Optional[bool] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_json(cls, item: dict) -> "PlanningEvent":
        return cls(
            id=int(item["id"]),
            title=str(item["title"]),
            start=str(item["start"]),
            end=str(item["end"]),
            target=item.get("target"),
            event_type=item.get("event_type", item.get("type")),
            registrable=item.get("registrable"),
        )


def parse_day(text: Optional[str], today: Optional[datetime.date] = None) -> datetime.date:
    """YYYY-MM-DD, or today (UTC) when nothing was given."""
    if not text:
        return today or datetime.datetime.now(datetime.timezone.utc).date()
    try:
        return datetime.datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError:
        raise InputValidationError("invalid date format, use YYYY-MM-DD")


def day_window(day: datetime.date):
    start = f"{day.isoformat()}T00:00:00{PLANNING_UTC_OFFSET}"
    end = f"{(day + datetime.timedelta(days=1)).isoformat()}T00:00:00{PLANNING_UTC_OFFSET}"
    return start, end


def parse_events(body: str) -> List[PlanningEvent]:
    try:
        payload = json.loads(body)
    except ValueError as e:
        logger.error(f"Could not parse EDSquare planning JSON: {e}")
        raise UpstreamContractError(f"invalid EDSquare planning response: {e}")
    if not isinstance(payload, list):
        raise UpstreamContractError("invalid EDSquare planning response: expected a JSON array")
    try:
        return [PlanningEvent.from_json(item) for item in payload]
    except (KeyError, TypeError, ValueError) as e:
        raise UpstreamContractError(f"invalid EDSquare planning event: {e}")


class PlanningFetcher:
    DASHBOARD_URL = f"{BASE_URL}/apps/planning/json_dashboard"

    def __init__(
        self,
        sessions: SessionCache,
        cache: Optional[TTLCache] = None,
        session_factory: Callable[[], SessionManager] = SessionManager,
    ):
        self.sessions = sessions
        self.cache = cache if cache is not None else TTLCache()
        self.session_factory = session_factory

    def fetch(self, user_id: str, day: datetime.date) -> List[PlanningEvent]:
        """
        Planning events of `day` for one user.
        A warm cache entry short-circuits both the session lookup and the request.
        """
        key = planning_cache_key(user_id, day)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Planning cache hit for {user_id} on {day}")
            return list(cached)

        events = self.sessions.with_session_retry(user_id, lambda: self.fetch_once(user_id, day))
        # Cached as a tuple so callers can't mutate the shared entry
        self.cache.put(key, tuple(events))
        logger.info(f"Fetched {len(events)} EDSquare event(s) for {day} (user: {user_id})")
        return events

    def fetch_once(self, user_id: str, day: datetime.date) -> List[PlanningEvent]:
        jar = self.sessions.get_valid_session(user_id)
        start, end = day_window(day)

        session = self.session_factory()
        try:
            resp = session.get(
                self.DASHBOARD_URL,
                params={"start": start, "end": end},
                headers={
                    "Cookie": serialize_header(jar),
                    "Accept": "*/*",
                    "Cache-Control": "no-cache",
                    "Referer": f"{BASE_URL}/home",
                },
            )
        finally:
            session.close()

        body = resp.text or ""
        redirected_to_login = is_sign_in_url(resp.url) or any(
            is_sign_in_url(hop.headers.get("Location")) for hop in resp.history
        )
        if redirected_to_login:
            raise SessionExpiredError("EDSquare session expired, please reconnect to EDSquare")
        if not resp.ok:
            if resp.status_code < 500 or "sign_in" in body:
                raise SessionExpiredError("EDSquare session expired, please reconnect to EDSquare")
            raise UpstreamRejectedError(
                f"EDSquare planning answered with status {resp.status_code}",
                upstream_status=resp.status_code,
            )
        # A 200 login page instead of the JSON array
        if "sign_in" in body and not body.lstrip().startswith("["):
            raise SessionExpiredError("EDSquare session expired, please reconnect to EDSquare")

        return parse_events(body)
