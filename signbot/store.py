"""
Persistence for users, their signatures, saved EDSquare credentials, the
per-day EDSquare cookie jar and the per-day intra cookie jar shared by all
users.

Every public method checks one connection out of the engine's pool, runs in
its own transaction and gives the connection back. Nothing is held open
between calls.
"""
import datetime
import logging
import random
import uuid
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import bcrypt
import sqlalchemy as sa

from signbot.cookies import CookieJar
from signbot.exceptions import InputValidationError, InvalidCredentialsError, NotFoundError

logger = logging.getLogger(__name__)

POOL_SIZE = 10
BCRYPT_ROUNDS = 12

metadata = sa.MetaData()

users = sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("username", sa.Text(), nullable=False, unique=True),
    sa.Column("password_hash", sa.Text(), nullable=False),
    sa.Column("jwt_intra", sa.Text()),
    sa.Column("jwt_expires_at", sa.DateTime()),
)

user_signatures = sa.Table(
    "user_signatures",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(36), nullable=False, index=True),
    sa.Column("signature_data", sa.Text(), nullable=False),
    sa.Column("created_at", sa.DateTime(), nullable=False),
)

edsquare_credentials = sa.Table(
    "edsquare_credentials",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(36), nullable=False, unique=True),
    sa.Column("email", sa.Text(), nullable=False),
    sa.Column("password", sa.Text(), nullable=False),
)

edsquare_cookies = sa.Table(
    "edsquare_cookies",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(36), nullable=False),
    sa.Column("date", sa.Date(), nullable=False),
    sa.Column("cookie_data", sa.JSON(), nullable=False),
    sa.UniqueConstraint("user_id", "date", name="uq_edsquare_cookies_user_date"),
)

# One jar per day shared by every user of the intra signing flow
intra_cookies = sa.Table(
    "intra_cookies",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("date", sa.Date(), nullable=False, unique=True),
    sa.Column("cookie_data", sa.JSON(), nullable=False),
)


@dataclass
class User:
    id: str
    username: str
    password_hash: str
    jwt_intra: Optional[str] = None
    jwt_expires_at: Optional[datetime.datetime] = None

    def verify_password(self, password: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), self.password_hash.encode("utf-8"))
        except ValueError:
            # Not a bcrypt hash
            return False


@dataclass
class Signature:
    id: str
    user_id: str
    signature_data: str
    created_at: datetime.datetime = field(default_factory=lambda: utc_now())


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def new_id() -> str:
    return str(uuid.uuid4())


def parse_user_id(raw: str) -> str:
    """Normalizes a user id, raising InputValidationError when it is not a UUID."""
    try:
        return str(uuid.UUID(str(raw).strip()))
    except (ValueError, AttributeError):
        raise InputValidationError(f"invalid user id: {raw!r}")


def utc_now() -> datetime.datetime:
    # Naive UTC, as stored in the DateTime columns
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def utc_today() -> datetime.date:
    return utc_now().date()


def create_db_engine(database_url: str) -> sa.engine.Engine:
    if database_url.startswith("sqlite"):
        return sa.create_engine(
            database_url,
            poolclass=sa.pool.QueuePool,
            pool_size=POOL_SIZE,
            connect_args={"check_same_thread": False},
        )
    return sa.create_engine(database_url, pool_size=POOL_SIZE, pool_pre_ping=True)


class Store:
    def __init__(self, engine: sa.engine.Engine, today: Callable[[], datetime.date] = utc_today):
        self.engine = engine
        self.today = today

    @classmethod
    def from_url(cls, database_url: str) -> "Store":
        store = cls(create_db_engine(database_url))
        store.create_all()
        return store

    def create_all(self):
        metadata.create_all(self.engine)

    # ------------------------------------------------------------
    # Users
    # ------------------------------------------------------------
    def create_user(self, username: str, password: str) -> User:
        username = (username or "").strip()
        if not username or not password:
            raise InputValidationError("username and password are required")
        user = User(id=new_id(), username=username, password_hash=hash_password(password))
        with self.engine.begin() as conn:
            exists = conn.execute(
                sa.select(users.c.id).where(users.c.username == username)
            ).first()
            if exists:
                raise InputValidationError(f"user {username} already exists")
            conn.execute(users.insert().values(
                id=user.id,
                username=user.username,
                password_hash=user.password_hash,
            ))
        logger.info(f"Created user {username} ({user.id})")
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(sa.select(users).where(users.c.id == user_id)).mappings().first()
        return User(**row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(sa.select(users).where(users.c.username == username)).mappings().first()
        return User(**row) if row else None

    def get_all_users(self) -> List[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(sa.select(users).order_by(users.c.username)).mappings().all()
        return [User(**row) for row in rows]

    def get_users_by_ids(self, user_ids: List[str]) -> List[User]:
        if not user_ids:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(sa.select(users).where(users.c.id.in_(user_ids))).mappings().all()
        return [User(**row) for row in rows]

    def update_user(
        self,
        user_id: str,
        username: Optional[str] = None,
        old_password: Optional[str] = None,
        new_password: Optional[str] = None,
    ) -> User:
        """
        Renames the user and/or changes the password.
        A new password is only accepted together with the current one.
        """
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")

        values = {}
        if new_password is not None:
            if old_password is None:
                raise InputValidationError("Old password is required")
            if not user.verify_password(old_password):
                raise InvalidCredentialsError("Old password is incorrect")
            values["password_hash"] = hash_password(new_password)

        if username is not None:
            username = username.strip()
            if not username:
                raise InputValidationError("Username cannot be empty")
            existing = self.get_user_by_username(username)
            if existing is not None and existing.id != user.id:
                raise InputValidationError("Username already exists")
            values["username"] = username

        if values:
            with self.engine.begin() as conn:
                conn.execute(users.update().where(users.c.id == user_id).values(**values))
            logger.info(f"Updated user {user_id}: {sorted(values)}")
        return self.get_user(user_id)

    def set_intra_token(self, user_id: str, token: str, expires_at: datetime.datetime):
        with self.engine.begin() as conn:
            updated = conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(jwt_intra=token, jwt_expires_at=expires_at)
            ).rowcount
        if not updated:
            raise NotFoundError("User not found")
        logger.info(f"Saved intra token for user {user_id} (expires {expires_at})")

    def delete_user_account(self, user_id: str) -> bool:
        """Removes the user and everything attached to it. Returns False if the user did not exist."""
        with self.engine.begin() as conn:
            conn.execute(user_signatures.delete().where(user_signatures.c.user_id == user_id))
            conn.execute(edsquare_credentials.delete().where(edsquare_credentials.c.user_id == user_id))
            conn.execute(edsquare_cookies.delete().where(edsquare_cookies.c.user_id == user_id))
            deleted = conn.execute(users.delete().where(users.c.id == user_id)).rowcount
        if deleted:
            logger.info(f"Deleted account {user_id}")
        return deleted > 0

    # ------------------------------------------------------------
    # Signatures
    # ------------------------------------------------------------
    def add_signature(self, user_id: str, signature_data: str) -> Signature:
        if not signature_data:
            raise InputValidationError("signature must not be empty")
        if self.get_user(user_id) is None:
            raise NotFoundError("User not found")
        signature = Signature(id=new_id(), user_id=user_id, signature_data=signature_data)
        with self.engine.begin() as conn:
            conn.execute(user_signatures.insert().values(
                id=signature.id,
                user_id=user_id,
                signature_data=signature_data,
                created_at=signature.created_at,
            ))
        return signature

    def get_signatures(self, user_id: str) -> List[Signature]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                sa.select(user_signatures)
                .where(user_signatures.c.user_id == user_id)
                .order_by(user_signatures.c.created_at.desc())
            ).mappings().all()
        return [Signature(**row) for row in rows]

    def get_random_signature(self, user_id: str) -> Optional[str]:
        signatures = self.get_signatures(user_id)
        if not signatures:
            return None
        return random.choice(signatures).signature_data

    def delete_signature(self, signature_id: str, user_id: str) -> bool:
        with self.engine.begin() as conn:
            deleted = conn.execute(
                user_signatures.delete()
                .where(user_signatures.c.id == signature_id)
                .where(user_signatures.c.user_id == user_id)
            ).rowcount
        return deleted > 0

    # ------------------------------------------------------------
    # EDSquare credentials
    # ------------------------------------------------------------
    def save_credentials(self, user_id: str, email: str, password: str):
        with self.engine.begin() as conn:
            existing = conn.execute(
                sa.select(edsquare_credentials.c.id).where(edsquare_credentials.c.user_id == user_id)
            ).first()
            if existing:
                logger.info(f"Updating EDSquare credentials for user {user_id}")
                conn.execute(
                    edsquare_credentials.update()
                    .where(edsquare_credentials.c.id == existing.id)
                    .values(email=email, password=password)
                )
            else:
                logger.info(f"Saving new EDSquare credentials for user {user_id}")
                conn.execute(edsquare_credentials.insert().values(
                    id=new_id(), user_id=user_id, email=email, password=password,
                ))

    def get_credentials(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(edsquare_credentials.c.email, edsquare_credentials.c.password)
                .where(edsquare_credentials.c.user_id == user_id)
            ).first()
        return (row.email, row.password) if row else None

    # ------------------------------------------------------------
    # EDSquare cookies (one jar per user per day)
    # ------------------------------------------------------------
    def save_cookies(self, user_id: str, jar: CookieJar, day: Optional[datetime.date] = None):
        day = day or self.today()
        data = jar.to_dicts()
        with self.engine.begin() as conn:
            existing = conn.execute(
                sa.select(edsquare_cookies.c.id)
                .where(edsquare_cookies.c.user_id == user_id)
                .where(edsquare_cookies.c.date == day)
            ).first()
            if existing:
                conn.execute(
                    edsquare_cookies.update()
                    .where(edsquare_cookies.c.id == existing.id)
                    .values(cookie_data=data)
                )
            else:
                conn.execute(edsquare_cookies.insert().values(
                    id=new_id(), user_id=user_id, date=day, cookie_data=data,
                ))
        logger.info(f"Saved {len(jar)} EDSquare cookies for user {user_id} ({day})")

    def get_cookies(self, user_id: str, day: Optional[datetime.date] = None) -> Optional[CookieJar]:
        """Returns the stored jar for `day` (default today), without expiry filtering."""
        day = day or self.today()
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(edsquare_cookies.c.cookie_data)
                .where(edsquare_cookies.c.user_id == user_id)
                .where(edsquare_cookies.c.date == day)
            ).first()
        if row is None:
            return None
        return CookieJar.from_dicts(row.cookie_data or [])

    def clear_cookies(self, user_id: str, day: Optional[datetime.date] = None):
        day = day or self.today()
        with self.engine.begin() as conn:
            conn.execute(
                edsquare_cookies.delete()
                .where(edsquare_cookies.c.user_id == user_id)
                .where(edsquare_cookies.c.date == day)
            )
        logger.info(f"Cleared EDSquare cookies for user {user_id} ({day})")

    # ------------------------------------------------------------
    # Intra cookies (one jar per day, shared by all users)
    # ------------------------------------------------------------
    def save_shared_cookies(self, jar: CookieJar, day: Optional[datetime.date] = None):
        day = day or self.today()
        data = jar.to_dicts()
        with self.engine.begin() as conn:
            existing = conn.execute(
                sa.select(intra_cookies.c.id).where(intra_cookies.c.date == day)
            ).first()
            if existing:
                conn.execute(
                    intra_cookies.update().where(intra_cookies.c.id == existing.id).values(cookie_data=data)
                )
            else:
                conn.execute(intra_cookies.insert().values(id=new_id(), date=day, cookie_data=data))
        logger.info(f"Saved {len(jar)} shared intra cookies ({day})")

    def get_shared_cookies(self, day: Optional[datetime.date] = None) -> Optional[CookieJar]:
        day = day or self.today()
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(intra_cookies.c.cookie_data).where(intra_cookies.c.date == day)
            ).first()
        if row is None:
            return None
        return CookieJar.from_dicts(row.cookie_data or [])

    def has_shared_cookies(self, day: Optional[datetime.date] = None) -> bool:
        return self.get_shared_cookies(day) is not None
