import datetime
import logging
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional

from signbot.code_validator import CODE_LENGTH, CodeValidator
from signbot.exceptions import InputValidationError, NotFoundError, SignbotError
from signbot.notifier import WebhookNotifier, build_sign_summary, build_validation_summary
from signbot.planning import PlanningFetcher
from signbot.sign import IntraSigner, SignResponse
from signbot.store import Store, parse_user_id

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    user_id: str
    username: str
    success: bool
    message: str


@dataclass
class BatchReport:
    global_success: bool
    results: List[ValidationResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class UserPlanningEvents:
    user_id: str
    username: str
    events: list = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "events": [e.to_dict() for e in self.events],
            "error": self.error,
        }


@dataclass
class UserSignResult:
    user_id: str
    username: str
    response: SignResponse

    def to_dict(self) -> dict:
        return {"user_id": self.user_id, "username": self.username, "response": self.response.value}


def _normalize_id(raw_id: str) -> str:
    """Canonical UUID form when `raw_id` is one, else the id unchanged."""
    try:
        return parse_user_id(raw_id)
    except InputValidationError:
        return raw_id


def _by_normalized_id(overrides: Optional[Dict[str, str]]) -> Dict[str, str]:
    return {_normalize_id(key): value for key, value in (overrides or {}).items()}


class BatchOrchestrator:
    """
    Runs code validation or planning lookups for several users, one after
    the other. A failing user never stops the batch: every outcome ends up
    in its own result entry.
    """

    def __init__(
        self,
        store: Store,
        validator: CodeValidator,
        planning: PlanningFetcher,
        notifier: Optional[WebhookNotifier] = None,
        signer: Optional[IntraSigner] = None,
        sign_notifier: Optional[WebhookNotifier] = None,
    ):
        self.store = store
        self.validator = validator
        self.planning = planning
        self.notifier = notifier or WebhookNotifier()
        self.signer = signer or IntraSigner()
        self.sign_notifier = sign_notifier or WebhookNotifier()

    def validate_multi(
        self,
        user_ids: List[str],
        code: str = "",
        planning_event_id: str = "",
        user_codes: Optional[Dict[str, str]] = None,
        user_planning_event_ids: Optional[Dict[str, str]] = None,
        initiated_by: Optional[str] = None,
    ) -> BatchReport:
        user_codes = _by_normalized_id(user_codes)
        user_planning_event_ids = _by_normalized_id(user_planning_event_ids)

        if not user_codes and not code:
            raise InputValidationError("code is required")
        if not planning_event_id and not user_planning_event_ids:
            raise InputValidationError("planning_event_id or user_planning_event_ids is required")
        if not user_ids:
            raise InputValidationError("user_ids must not be empty")

        logger.info(
            f"validate-multi: user_ids={len(user_ids)}, per_user_codes={len(user_codes)}, "
            f"per_user_events={len(user_planning_event_ids)}"
        )

        results: List[ValidationResult] = []
        codes_used: Dict[str, str] = {}
        for raw_id in user_ids:
            key = _normalize_id(raw_id)
            user_code = user_codes.get(key, code)
            result = self._validate_user(raw_id, user_code, user_planning_event_ids.get(key, planning_event_id))
            results.append(result)
            if result.success:
                codes_used[result.user_id] = user_code

        report = BatchReport(global_success=all(r.success for r in results), results=results)
        self._report(report, sorted(set(codes_used.values())), initiated_by)
        return report

    def _validate_user(self, raw_id: str, code: str, planning_event_id: str) -> ValidationResult:
        try:
            user_id = parse_user_id(raw_id)
        except InputValidationError:
            logger.warning(f"Invalid user_id '{raw_id}' in validate-multi")
            return ValidationResult(raw_id, "<invalid id>", False, "Invalid user id")

        user = self.store.get_user(user_id)
        if user is None:
            logger.warning(f"User not found for validate-multi: {user_id}")
            return ValidationResult(user_id, "<unknown>", False, "User not found")

        signature = self.store.get_random_signature(user.id)
        if signature is None:
            logger.warning(f"No signature for {user.username} ({user.id})")
            return ValidationResult(user.id, user.username, False, "Signature not set. Please create a signature first.")

        if len(code) != CODE_LENGTH:
            return ValidationResult(
                user.id, user.username, False,
                f"code must contain exactly {CODE_LENGTH} digits, got {len(code)} characters",
            )

        try:
            outcome = self.validator.validate(code, planning_event_id, signature, user.id)
        except SignbotError as e:
            logger.error(f"EDSquare validation failed for {user.username} ({user.id}): {e}")
            return ValidationResult(user.id, user.username, False, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error validating for {user.username} ({user.id})")
            return ValidationResult(user.id, user.username, False, f"Unexpected error: {e}")

        logger.info(f"EDSquare code validated for {user.username} ({user.id})")
        return ValidationResult(user.id, user.username, outcome.success, outcome.message)

    def _report(self, report: BatchReport, validated_codes: List[str], initiated_by: Optional[str]):
        validated = [r.username for r in report.results if r.success]
        if not validated or not self.notifier.enabled:
            return
        failed = [(r.username, r.message) for r in report.results if not r.success]
        payload = build_validation_summary(
            self.notifier.webhook_url,
            report.global_success,
            validated,
            failed,
            validated_codes,
            initiated_by or "unknown",
        )
        self.notifier.send_async(payload)

    def sign_multi(self, user_ids: List[str], url: str, initiated_by: Optional[str] = None) -> List[UserSignResult]:
        """
        Signs `url` on the intra for every user with today's shared cookies.

        Unlike validate_multi, the request is refused as a whole when an id is
        malformed or unknown, or when nobody uploaded today's cookies.
        """
        if not url:
            raise InputValidationError("url is required")
        if not user_ids:
            raise InputValidationError("user_ids must not be empty")

        ids: List[str] = []
        for raw_id in user_ids:
            user_id = parse_user_id(raw_id)
            if user_id not in ids:
                ids.append(user_id)

        shared = self.store.get_shared_cookies()
        if shared is None:
            raise NotFoundError("No cookies found for today")

        users = {user.id: user for user in self.store.get_users_by_ids(ids)}
        if len(users) != len(ids):
            logger.error(f"sign-multi: expected {len(ids)} user(s), found {len(users)}")
            raise InputValidationError("No users found for the provided ids")

        logger.info(f"sign-multi: {len(ids)} user(s) on {url}")
        results: List[UserSignResult] = []
        for user_id in ids:
            user = users[user_id]
            try:
                response = self.signer.sign(user, url, shared)
            except Exception:
                logger.exception(f"Unexpected error signing for {user.username} ({user.id})")
                response = SignResponse.UNKNOWN_ERROR
            results.append(UserSignResult(user.id, user.username, response))

        self._report_sign(results, url, initiated_by)
        return results

    def _report_sign(self, results: List[UserSignResult], url: str, initiated_by: Optional[str]):
        validated = [r.username for r in results if r.response is SignResponse.SUCCESS]
        if not validated or not self.sign_notifier.enabled:
            return
        failed = [(r.username, r.response.message) for r in results if r.response is not SignResponse.SUCCESS]
        payload = build_sign_summary(self.sign_notifier.webhook_url, validated, failed, url, initiated_by or "unknown")
        self.sign_notifier.send_async(payload)

    def planning_for_users(self, user_ids: List[str], day: datetime.date) -> List[UserPlanningEvents]:
        if not user_ids:
            raise InputValidationError("user_ids must not be empty")

        entries: List[UserPlanningEvents] = []
        for raw_id in user_ids:
            try:
                user_id = parse_user_id(raw_id)
            except InputValidationError:
                entries.append(UserPlanningEvents(raw_id, "<invalid id>", error="Invalid user id"))
                continue

            user = self.store.get_user(user_id)
            username = user.username if user else "<unknown>"
            try:
                events = self.planning.fetch(user_id, day)
            except SignbotError as e:
                logger.warning(f"Planning fetch failed for {username} ({user_id}): {e}")
                entries.append(UserPlanningEvents(user_id, username, error=str(e)))
                continue
            entries.append(UserPlanningEvents(user_id, username, events=events))
        return entries
