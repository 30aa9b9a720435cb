"""Player accounts: creation, guests, login and activation."""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from walletgate.common.errors import InvalidGrant, InvalidParameter, InvalidState, missing_parameter
from walletgate.common.logging import logger
from walletgate.common.money import from_cents, to_cents
from walletgate.common.security import hash_secret, verify_secret
from walletgate.common.timeutil import as_utc, utcnow
from walletgate.services.accounts.models import User

CURRENCIES = ("USD", "CNY", "KRW", "JPY", "THB")
LANGUAGES = {
    "en_US": "en_US",
    "zh_CN": "zh_CN",
    "zh_TW": "zh_TW",
    "ko_KR": "ko_KR",
    "ja_JP": "ja_JP",
    "th_TH": "th_TH",
}
DEFAULT_LANGUAGE = "en_US"
DEFAULT_CURRENCY_BALANCE = {
    "USD": Decimal("50000"),
    "CNY": Decimal("500000"),
    "KRW": Decimal("50000000"),
    "JPY": Decimal("5000000"),
    "THB": Decimal("1500000"),
}
DEFAULT_PASSWORD = "casino"
DEFAULT_EMAIL_DOMAIN = "example.com"
GUEST_NAME_PREFIXES = ("Alice", "Bruno", "Chen", "Dana", "Emil", "Farah", "Goro", "Hana", "Ivan", "Jae")

USER_REAL = "real"
USER_GUEST = "guest"


def normalize_language(language: str | None) -> str:
    """Map `zh-CN` style tags onto the supported table, defaulting to en_US."""

    if not language:
        return DEFAULT_LANGUAGE
    return LANGUAGES.get(language.replace("-", "_"), DEFAULT_LANGUAGE)


def negotiate_language(accept_language: str | None, supported: list[str]) -> str:
    """Pick the first Accept-Language entry that is in `supported`."""

    supported_norm = {tag.replace("-", "_").lower(): tag for tag in supported}
    for part in (accept_language or "").split(","):
        tag = part.split(";")[0].strip().replace("-", "_").lower()
        if tag in supported_norm:
            return normalize_language(supported_norm[tag])
    return normalize_language(supported[0] if supported else None)


@dataclass(frozen=True)
class UserView:
    """User as handed to handlers; never carries the password hash."""

    user_id: str
    username: str
    name: str
    currency: str
    balance: Decimal
    language: str
    user_type: str
    active: bool
    expires_at: datetime | None
    avatar_url: str | None

    @classmethod
    def from_row(cls, row: User) -> "UserView":
        return cls(
            user_id=row.user_id,
            username=row.username,
            name=row.name,
            currency=row.currency,
            balance=from_cents(row.balance_cents),
            language=row.language,
            user_type=row.user_type,
            active=row.active,
            expires_at=as_utc(row.expires_at) if row.expires_at else None,
            avatar_url=row.avatar_url,
        )

    def is_usable(self, now: datetime) -> bool:
        if not self.active:
            return False
        return self.expires_at is None or self.expires_at > now

    def to_public(self) -> dict:
        return {
            "id": self.user_id,
            "username": self.username,
            "name": self.name,
            "currency": self.currency,
            "balance": self.balance,
            "language": self.language,
            "type": self.user_type,
            "active": self.active,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "avatarUrl": self.avatar_url,
        }


class AccountService:
    """Owns user records apart from balance mutation, which goes through the ledger."""

    def __init__(
        self,
        session_factory,
        ledger,
        grants,
        salt_rounds: int = 10,
        guest_ttl_seconds: int = 86400,
        initial_guest_balance: Decimal = Decimal("100000"),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.grants = grants
        self.salt_rounds = salt_rounds
        self.guest_ttl_seconds = guest_ttl_seconds
        self.initial_guest_balance = initial_guest_balance
        self.clock = clock

    def create_user(
        self,
        *,
        currency: str | None,
        balance,
        language: str | None,
        username: str | None = None,
        password: str | None = None,
        name: str | None = None,
        name_prefix: str | None = None,
        user_type: str = USER_REAL,
        avatar_url: str | None = None,
    ) -> UserView:
        """Validate input, hash the password and persist a new user."""

        if balance is None:
            raise InvalidParameter(f"invalid balance {balance}", parameter="balance")
        try:
            balance_cents = to_cents(balance)
        except ValueError as exc:
            raise InvalidParameter(f"invalid balance {balance}", parameter="balance") from exc
        if balance_cents < 0:
            raise InvalidParameter(f"invalid balance {balance}", parameter="balance")
        if not currency:
            raise missing_parameter("currency")
        currency = currency.upper()
        if currency not in CURRENCIES:
            raise InvalidParameter(f"unsupported currency {currency}", parameter="currency")
        if not language:
            raise missing_parameter("language")
        if user_type not in (USER_REAL, USER_GUEST):
            raise InvalidParameter(f"invalid user type {user_type}", parameter="type")

        user_id = str(uuid4())
        # Hash outside the session.
        password_hash = hash_secret(password or user_id, self.salt_rounds)
        display_name = name or f"{name_prefix or 'player'}{secrets.randbelow(500)}"
        now = self.clock()
        row = User(
            user_id=user_id,
            username=username or user_id,
            name=display_name[:1].upper() + display_name[1:],
            password_hash=password_hash,
            currency=currency,
            balance_cents=balance_cents,
            opening_balance_cents=balance_cents,
            language=normalize_language(language),
            user_type=user_type,
            active=True,
            expires_at=now + timedelta(seconds=self.guest_ttl_seconds) if user_type == USER_GUEST else None,
            avatar_url=avatar_url,
            version=0,
        )
        with self.session_factory() as db:
            db.add(row)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise InvalidParameter(f"username {row.username} already exists", parameter="username") from exc
        logger.info("user created user_id=%s type=%s currency=%s", user_id, user_type, currency)
        return UserView.from_row(row)

    def create_guest_user(self, language: str | None = None) -> UserView:
        return self.create_user(
            name_prefix=secrets.choice(GUEST_NAME_PREFIXES),
            currency="USD",
            user_type=USER_GUEST,
            balance=self.initial_guest_balance,
            language=language or DEFAULT_LANGUAGE,
        )

    def _find_by_username(self, username: str) -> User:
        with self.session_factory() as db:
            row = db.execute(select(User).where(User.username == username)).scalar_one_or_none()
        if row is None:
            raise InvalidGrant(f"unknown user {username}")
        return row

    def find_user_by_id(self, user_id: str) -> UserView | None:
        with self.session_factory() as db:
            row = db.get(User, user_id)
        return UserView.from_row(row) if row is not None else None

    def find_user_by_username(self, username: str) -> UserView:
        return UserView.from_row(self._find_by_username(username))

    def get_user(self, username: str) -> UserView:
        """Return the user if it may currently authorize anything."""

        user = self.find_user_by_username(username)
        if not user.is_usable(self.clock()):
            raise InvalidState(f"user {username} is not active")
        return user

    def login_user(self, username: str | None, password: str | None) -> UserView:
        if not username:
            raise missing_parameter("username")
        if not password:
            raise missing_parameter("password")
        row = self._find_by_username(username)
        user = UserView.from_row(row)
        if not user.is_usable(self.clock()):
            raise InvalidState(f"user {username} is not active")
        if not verify_secret(password, row.password_hash):
            raise InvalidGrant("Invalid grant: user credentials are invalid")
        return user

    def update_user(
        self,
        username: str | None,
        *,
        balance=None,
        language: str | None = None,
        password: str | None = None,
        name: str | None = None,
        avatar_url: str | None = None,
    ) -> UserView:
        """Apply profile changes; a balance change is posted as a ledger adjustment."""

        if not username:
            raise missing_parameter("username")
        # Reject a bad balance before any profile field is written.
        if balance is not None:
            try:
                balance_cents = to_cents(balance)
            except ValueError as exc:
                raise InvalidParameter(f"invalid balance {balance}", parameter="balance") from exc
            if balance_cents < 0:
                raise InvalidParameter(f"invalid balance {balance}", parameter="balance")
        password_hash = hash_secret(password, self.salt_rounds) if password else None
        with self.session_factory() as db:
            row = db.execute(select(User).where(User.username == username)).scalar_one_or_none()
            if row is None:
                raise InvalidGrant(f"unknown user {username}")
            if language:
                row.language = normalize_language(language)
            if password_hash:
                row.password_hash = password_hash
            if name:
                row.name = name
            if avatar_url is not None:
                row.avatar_url = avatar_url
            user_id = row.user_id
            db.commit()
        if balance is not None:
            self.ledger.adjust_balance(user_id, from_cents(balance_cents))
        logger.info("user updated user_id=%s", user_id)
        return self.find_user_by_id(user_id)

    def set_user_active(self, username: str | None, active: bool) -> UserView:
        """Flip the active flag; deactivation revokes every outstanding grant."""

        if not username:
            raise missing_parameter("username")
        with self.session_factory() as db:
            row = db.execute(select(User).where(User.username == username)).scalar_one_or_none()
            if row is None:
                raise InvalidGrant(f"unknown user {username}")
            row.active = bool(active)
            db.commit()
            user = UserView.from_row(row)
        if not user.active:
            self.grants.revoke_user_grants(user.user_id)
        logger.info("user active=%s user_id=%s", user.active, user.user_id)
        return user

    def seed_default_players(self) -> list[UserView]:
        """Create player1..player5 test accounts when absent."""

        created = []
        for name in ("player1", "player2", "player3", "player4", "player5"):
            username = f"{name}@{DEFAULT_EMAIL_DOMAIN}"
            with self.session_factory() as db:
                exists = db.execute(select(User.user_id).where(User.username == username)).first()
            if exists:
                continue
            created.append(
                self.create_user(
                    name=name,
                    username=username,
                    password=DEFAULT_PASSWORD,
                    currency="USD",
                    balance=DEFAULT_CURRENCY_BALANCE["USD"],
                    language=DEFAULT_LANGUAGE,
                )
            )
        return created
