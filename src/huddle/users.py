"""User registry - identities bound to a connection's lifetime."""

import logging
import re
import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime

from huddle.clock import Clock, utcnow
from huddle.errors import ErrorKind, Result
from huddle.models import UserStatus

logger = logging.getLogger(__name__)

MIN_USERNAME_LENGTH = 2
MAX_USERNAME_LENGTH = 20
USERNAME_PATTERN = re.compile(r"[A-Za-z0-9_-]+")
UNKNOWN_USERNAME = "Unknown"

GUEST_PREFIX = "Guest_"
GUEST_SUFFIX_LENGTH = 5
GUEST_NAME_ATTEMPTS = 20
_GUEST_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class User:
    """A connected identity. Flips to offline when its connection closes."""

    id: str
    username: str
    is_guest: bool
    joined_at: datetime
    last_seen: datetime
    status: UserStatus = UserStatus.ONLINE

    @property
    def is_active(self) -> bool:
        return self.status is not UserStatus.OFFLINE


class UserRegistry:
    """In-memory store of users keyed by id."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._users: dict[str, User] = {}

    def create_user(self, username: str, is_guest: bool = False) -> User:
        """Allocate a new identity. Uniqueness is checked by the caller."""
        now = self._clock()
        user = User(
            id=uuid.uuid4().hex,
            username=username,
            is_guest=is_guest,
            joined_at=now,
            last_seen=now,
        )
        self._users[user.id] = user
        logger.debug("Created user %s (%s)", user.username, user.id)
        return user

    def get_user(self, user_id: str) -> User | None:
        return self._users.get(user_id)

    def update_status(self, user_id: str, status: UserStatus) -> None:
        user = self._users.get(user_id)
        if user is None:
            return
        user.status = status
        user.last_seen = self._clock()

    def username_for(self, user_id: str, default: str = UNKNOWN_USERNAME) -> str:
        user = self._users.get(user_id)
        return user.username if user else default

    def all_users(self) -> list[User]:
        return list(self._users.values())

    def online_users(self) -> list[User]:
        return [u for u in self._users.values() if u.status is UserStatus.ONLINE]

    def is_taken(self, username: str) -> bool:
        """Whether an active user already holds this name, ignoring case."""
        lowered = username.lower()
        return any(
            u.is_active and u.username.lower() == lowered
            for u in self._users.values()
        )

    def validate_username(self, username: str | None) -> Result[str]:
        """Check a display name before creating a user for it."""
        if not username or not username.strip():
            return Result.failure(ErrorKind.VALIDATION, "Username is required")

        if not MIN_USERNAME_LENGTH <= len(username) <= MAX_USERNAME_LENGTH:
            return Result.failure(
                ErrorKind.VALIDATION,
                f"Username must be {MIN_USERNAME_LENGTH}-{MAX_USERNAME_LENGTH}"
                " characters",
            )

        if not USERNAME_PATTERN.fullmatch(username):
            return Result.failure(
                ErrorKind.VALIDATION,
                "Username can only contain letters, numbers, underscore, and dash",
            )

        if self.is_taken(username):
            return Result.failure(ErrorKind.VALIDATION, "Username already taken")

        return Result.success(username)

    def generate_guest_name(self) -> str:
        """Pick an unused ``Guest_xxxxx`` name."""
        for _ in range(GUEST_NAME_ATTEMPTS):
            suffix = "".join(
                secrets.choice(_GUEST_ALPHABET) for _ in range(GUEST_SUFFIX_LENGTH)
            )
            name = GUEST_PREFIX + suffix
            if not self.is_taken(name):
                return name
        msg = "Could not find a free guest name"
        raise RuntimeError(msg)
