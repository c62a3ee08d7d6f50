import argparse
import json
import logging
import sys
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Dict, List, Optional

from signbot.api_client import SessionManager
from signbot.batch import BatchOrchestrator
from signbot.code_validator import CodeValidator
from signbot.cookies import CookieJar
from signbot.config import Settings, load_settings
from signbot.exceptions import InputValidationError, NotFoundError, SignbotError
from signbot.login_manager import LoginManager
from signbot.notifier import WebhookNotifier
from signbot.planning import PlanningFetcher, parse_day
from signbot.session_cache import SessionCache
from signbot.sign import IntraSigner, SignResponse, decode_token_expiry
from signbot.state import TTLCache
from signbot.store import Store, parse_user_id

# Logging setup
SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")


def log_success(self, message, *args, **kwargs):
    if self.isEnabledFor(SUCCESS):
        self._log(SUCCESS, message, args, **kwargs)


logging.Logger.success = log_success

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stderr,
    )


@dataclass
class Services:
    settings: Settings
    store: Store
    login_manager: LoginManager
    sessions: SessionCache
    validator: CodeValidator
    planning: PlanningFetcher
    batch: BatchOrchestrator


def build_services(settings: Settings, store: Optional[Store] = None, session_factory=None) -> Services:
    store = store or Store.from_url(settings.database_url)
    session_factory = session_factory or partial(SessionManager, settings.http_timeout)
    login_manager = LoginManager(store, session_factory)
    sessions = SessionCache(store, login_manager)
    validator = CodeValidator(sessions, session_factory)
    planning = PlanningFetcher(sessions, TTLCache(ttl=settings.planning_cache_ttl), session_factory)
    batch = BatchOrchestrator(
        store,
        validator,
        planning,
        WebhookNotifier(settings.edsquare_webhook_url),
        signer=IntraSigner(session_factory),
        sign_notifier=WebhookNotifier(settings.sign_webhook_url),
    )
    return Services(settings, store, login_manager, sessions, validator, planning, batch)


def _parse_pairs(pairs: Optional[List[str]], option: str) -> Dict[str, str]:
    """USER_ID=VALUE pairs from repeated options."""
    parsed = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key or not value:
            raise InputValidationError(f"{option} expects USER_ID=VALUE, got {pair!r}")
        parsed[key.strip()] = value.strip()
    return parsed


def _split_ids(raw: str) -> List[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def _read_text(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8").strip()
    except OSError as e:
        raise InputValidationError(f"cannot read {path}: {e}")


def _read_cookie_export(path: str) -> list:
    """Browser cookie export: a JSON list, or an object with a `cookies` list."""
    try:
        cookies = json.loads(_read_text(path))
    except ValueError as e:
        raise InputValidationError(f"cookie file is not valid JSON: {e}")
    if isinstance(cookies, dict):
        cookies = cookies.get("cookies", [])
    return cookies


def _require_user(services: Services, raw_id: str):
    """Looks the user up by id, falling back to the username."""
    try:
        user_id = parse_user_id(raw_id)
    except InputValidationError:
        user = services.store.get_user_by_username(raw_id.strip())
        if user is None:
            raise
        return user
    user = services.store.get_user(user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


# ------------------------------------------------------------
# Commands
# ------------------------------------------------------------
def cmd_add_user(services: Services, args) -> dict:
    if services.settings.register_key and args.register_key != services.settings.register_key:
        raise InputValidationError("invalid register key")
    user = services.store.create_user(args.username, args.password)
    return {"id": user.id, "username": user.username}


def cmd_add_signature(services: Services, args) -> dict:
    user = _require_user(services, args.user)
    signature = services.store.add_signature(user.id, _read_text(args.file))
    return {"id": signature.id, "created_at": signature.created_at.isoformat()}


def cmd_signatures(services: Services, args) -> dict:
    user = _require_user(services, args.user)
    return {
        "signatures": [
            {"id": s.id, "created_at": s.created_at.isoformat(), "length": len(s.signature_data)}
            for s in services.store.get_signatures(user.id)
        ]
    }


def cmd_delete_signature(services: Services, args) -> dict:
    user = _require_user(services, args.user)
    if not services.store.delete_signature(args.signature_id, user.id):
        raise NotFoundError("Signature not found")
    return {"deleted": args.signature_id}


def cmd_delete_user(services: Services, args) -> dict:
    expected = services.settings.admin_key
    if not expected:
        raise InputValidationError("admin key not configured (ADMIN_KEY)")
    if (args.admin_key or "").strip() != expected:
        raise InputValidationError("invalid admin key")
    user_id = parse_user_id(args.user)
    if not services.store.delete_user_account(user_id):
        raise NotFoundError("User not found")
    return {"deleted": user_id}


def cmd_login(services: Services, args) -> dict:
    user = _require_user(services, args.user)
    if not args.email or not args.password:
        raise InputValidationError("email and password are required")
    result = services.login_manager.login(args.email, args.password, user.id)
    return {"success": result.success, "message": result.message}


def cmd_login_saved(services: Services, args) -> dict:
    user = _require_user(services, args.user)
    result = services.login_manager.login_with_saved(user.id)
    return {"success": result.success, "message": result.message}


def cmd_save_cookies(services: Services, args) -> dict:
    user = _require_user(services, args.user)
    jar = services.sessions.save_cookies(user.id, _read_cookie_export(args.file))
    return {"saved": jar.names}


def cmd_status(services: Services, args) -> dict:
    user = _require_user(services, args.user)
    return services.sessions.status(user.id)


def cmd_eligible(services: Services, args) -> dict:
    return {"users": services.sessions.eligible_users()}


def cmd_validate(services: Services, args) -> dict:
    user = _require_user(services, args.user)
    signature = services.store.get_random_signature(user.id)
    if signature is None:
        raise NotFoundError("Signature not set. Please create a signature first.")
    outcome = services.validator.validate(args.code, args.event, signature, user.id)
    logger.success(f"[{user.username}] code {args.code} validated")
    return {
        "success": outcome.success,
        "message": outcome.message,
        "code": outcome.code,
        "planning_event_id": outcome.planning_event_id,
    }


def cmd_validate_multi(services: Services, args) -> dict:
    report = services.batch.validate_multi(
        _split_ids(args.users),
        code=args.code or "",
        planning_event_id=args.event or "",
        user_codes=_parse_pairs(args.user_code, "--user-code"),
        user_planning_event_ids=_parse_pairs(args.user_event, "--user-event"),
        initiated_by=args.initiated_by,
    )
    for result in report.results:
        if result.success:
            logger.success(f"[{result.username}] validated")
        else:
            logger.error(f"[{result.username}] failed: {result.message}")
    return report.to_dict()


def cmd_planning(services: Services, args) -> dict:
    user = _require_user(services, args.user)
    events = services.planning.fetch(user.id, parse_day(args.date))
    return {"events": [e.to_dict() for e in events]}


def cmd_planning_users(services: Services, args) -> dict:
    entries = services.batch.planning_for_users(_split_ids(args.users), parse_day(args.date))
    return {"user_events": [entry.to_dict() for entry in entries]}


def cmd_update_user(services: Services, args) -> dict:
    user = _require_user(services, args.user)
    if args.username is None and args.new_password is None:
        raise InputValidationError("nothing to update, pass --username and/or --new-password")
    updated = services.store.update_user(
        user.id,
        username=args.username,
        old_password=args.old_password,
        new_password=args.new_password,
    )
    return {"id": updated.id, "username": updated.username}


def cmd_set_intra_token(services: Services, args) -> dict:
    user = _require_user(services, args.user)
    token = args.token.strip()
    expires_at = decode_token_expiry(token)
    services.store.set_intra_token(user.id, token, expires_at)
    return {"id": user.id, "jwt_expires_at": expires_at.isoformat()}


def cmd_save_sign_cookies(services: Services, args) -> dict:
    try:
        jar = CookieJar.from_dicts(_read_cookie_export(args.file))
    except (KeyError, TypeError, ValueError) as e:
        raise InputValidationError(f"invalid cookie payload: {e}")
    if not jar:
        raise InputValidationError("cookie payload is empty")
    services.store.save_shared_cookies(jar)
    return {"saved": jar.names}


def cmd_sign_status(services: Services, args) -> dict:
    if not services.store.has_shared_cookies():
        raise NotFoundError("No cookies found for today")
    return {"message": "Cookies exist for today"}


def cmd_sign(services: Services, args) -> dict:
    results = services.batch.sign_multi(_split_ids(args.users), args.url, initiated_by=args.initiated_by)
    for result in results:
        if result.response is SignResponse.SUCCESS:
            logger.success(f"[{result.username}] signed")
        else:
            logger.error(f"[{result.username}] not signed: {result.response.message}")
    return {"results": [r.to_dict() for r in results]}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="signbot", description="EDSquare attendance automation")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("add-user", help="create a local user")
    p.add_argument("--username", required=True)
    p.add_argument("--password", required=True)
    p.add_argument("--register-key")
    p.set_defaults(handler=cmd_add_user)

    p = sub.add_parser("add-signature", help="store a data-URL PNG signature for a user")
    p.add_argument("--user", required=True)
    p.add_argument("--file", required=True, help="text file holding data:image/png;base64,...")
    p.set_defaults(handler=cmd_add_signature)

    p = sub.add_parser("signatures", help="list a user's signatures")
    p.add_argument("--user", required=True)
    p.set_defaults(handler=cmd_signatures)

    p = sub.add_parser("delete-signature")
    p.add_argument("--user", required=True)
    p.add_argument("--signature-id", required=True)
    p.set_defaults(handler=cmd_delete_signature)

    p = sub.add_parser("delete-user", help="delete an account and all its data (admin)")
    p.add_argument("--user", required=True)
    p.add_argument("--admin-key", required=True)
    p.set_defaults(handler=cmd_delete_user)

    p = sub.add_parser("login", help="log into EDSquare and save cookies + credentials")
    p.add_argument("--user", required=True)
    p.add_argument("--email", required=True)
    p.add_argument("--password", required=True)
    p.set_defaults(handler=cmd_login)

    p = sub.add_parser("login-saved", help="log into EDSquare with the saved credentials")
    p.add_argument("--user", required=True)
    p.set_defaults(handler=cmd_login_saved)

    p = sub.add_parser("save-cookies", help="import a browser cookie export as today's session")
    p.add_argument("--user", required=True)
    p.add_argument("--file", required=True)
    p.set_defaults(handler=cmd_save_cookies)

    p = sub.add_parser("status")
    p.add_argument("--user", required=True)
    p.set_defaults(handler=cmd_status)

    p = sub.add_parser("eligible", help="users ready for EDSquare validation")
    p.set_defaults(handler=cmd_eligible)

    p = sub.add_parser("validate", help="validate a code for one user")
    p.add_argument("--user", required=True)
    p.add_argument("--code", required=True)
    p.add_argument("--event", required=True, help="planning_event_id")
    p.set_defaults(handler=cmd_validate)

    p = sub.add_parser("validate-multi", help="validate a code for several users")
    p.add_argument("--users", required=True, help="comma-separated user ids")
    p.add_argument("--code")
    p.add_argument("--event", help="planning_event_id shared by all users")
    p.add_argument("--user-code", action="append", metavar="USER_ID=CODE")
    p.add_argument("--user-event", action="append", metavar="USER_ID=EVENT_ID")
    p.add_argument("--initiated-by")
    p.set_defaults(handler=cmd_validate_multi)

    p = sub.add_parser("planning", help="planning events of one user")
    p.add_argument("--user", required=True)
    p.add_argument("--date", help="YYYY-MM-DD, default today")
    p.set_defaults(handler=cmd_planning)

    p = sub.add_parser("planning-users", help="planning events of several users")
    p.add_argument("--users", required=True, help="comma-separated user ids")
    p.add_argument("--date", help="YYYY-MM-DD, default today")
    p.set_defaults(handler=cmd_planning_users)

    p = sub.add_parser("update-user", help="rename a user or change their password")
    p.add_argument("--user", required=True, help="user id or username")
    p.add_argument("--username")
    p.add_argument("--old-password")
    p.add_argument("--new-password")
    p.set_defaults(handler=cmd_update_user)

    p = sub.add_parser("set-intra-token", help="store a user's intra JWT and its expiry")
    p.add_argument("--user", required=True)
    p.add_argument("--token", required=True)
    p.set_defaults(handler=cmd_set_intra_token)

    p = sub.add_parser("save-sign-cookies", help="import today's shared intra cookies")
    p.add_argument("--file", required=True)
    p.set_defaults(handler=cmd_save_sign_cookies)

    p = sub.add_parser("sign-status", help="whether today's shared intra cookies exist")
    p.set_defaults(handler=cmd_sign_status)

    p = sub.add_parser("sign", help="sign an intra URL for several users")
    p.add_argument("--users", required=True, help="comma-separated user ids")
    p.add_argument("--url", required=True)
    p.add_argument("--initiated-by")
    p.set_defaults(handler=cmd_sign)

    return parser


def main(argv: Optional[List[str]] = None, services: Optional[Services] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = services.settings if services else load_settings()
    configure_logging(settings.log_level)
    services = services or build_services(settings)

    try:
        result = args.handler(services, args)
    except InputValidationError as e:
        logger.error(f"❌ {e}")
        print(json.dumps({"error": str(e), "status": e.status_code}, ensure_ascii=False))
        return 2
    except SignbotError as e:
        logger.error(f"❌ {e}")
        print(json.dumps({"error": str(e), "status": e.status_code}, ensure_ascii=False))
        return 1

    print(json.dumps(result, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
