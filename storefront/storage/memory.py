from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from storefront.logging import get_logger
from storefront.storage.errors import ConstraintViolation
from storefront.storage.models import User, utcnow

SORT_ORDERS = ("asc", "desc", "newest")


class MemoryStore:
    """In-process credential store persisted to a JSON file under ``fs_root``.

    Records handed out are copies; changes only land through ``save_user`` or
    the dedicated refresh-token operations.
    """

    def __init__(self, fs_root: str = "/tmp/storefront") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> None:
        if not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

    # users
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: str = "user",
        is_verified: bool = False,
        is_active: bool = True,
        email_verification_token_hash: Optional[str] = None,
        email_verification_expires_at: Optional[datetime] = None,
    ) -> User:
        email = email.lower()
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                role=role,
                is_verified=is_verified,
                is_active=is_active,
                email_verification_token_hash=email_verification_token_hash,
                email_verification_expires_at=email_verification_expires_at,
            )
            self.users[user.id] = user
            self._persist_state()
            return copy.copy(user)

    def save_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user.id})
            for other in self.users.values():
                if other.id == user.id:
                    continue
                if other.username == user.username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if other.email == user.email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            stored = copy.copy(user)
            stored.updated_at = utcnow()
            self.users[user.id] = stored
            self._persist_state()
            return copy.copy(stored)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.copy(user) if user else None

    def _find(self, predicate) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if predicate(u)), None)
            return copy.copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.lower()
        return self._find(lambda u: u.email == email)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._find(lambda u: u.username == username)

    def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        lowered = identifier.lower()
        return self._find(lambda u: u.email == lowered or u.username == identifier)

    def get_user_by_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[User]:
        return self._find(
            lambda u: u.email_verification_token_hash == token_hash
            and u.email_verification_expires_at is not None
            and u.email_verification_expires_at > now
        )

    def get_user_by_reset_token(self, token_hash: str, now: datetime) -> Optional[User]:
        return self._find(
            lambda u: u.password_reset_token_hash == token_hash
            and u.password_reset_expires_at is not None
            and u.password_reset_expires_at > now
        )

    def get_user_by_refresh_token(self, token: str) -> Optional[User]:
        return self._find(lambda u: u.refresh_token is not None and u.refresh_token == token)

    def list_users(
        self, *, offset: int = 0, limit: int = 10, sort: str = "newest"
    ) -> Tuple[List[User], int]:
        if sort not in SORT_ORDERS:
            raise ValueError(f"unsupported sort order: {sort}")
        with self._data_lock:
            users = list(self.users.values())
            total = len(users)
            if sort == "newest":
                users.sort(key=lambda u: u.created_at, reverse=True)
            else:
                users.sort(key=lambda u: u.username, reverse=sort == "desc")
            return [copy.copy(u) for u in users[offset : offset + limit]], total

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self._persist_state()
            return True

    # single-session refresh token
    def set_refresh_token(self, user_id: str, token: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.refresh_token = token
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def clear_refresh_token(self, user_id: str, expected: Optional[str] = None) -> bool:
        """Clear the stored token; with ``expected``, only if it still matches."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.refresh_token is None:
                return False
            if expected is not None and user.refresh_token != expected:
                return False
            user.refresh_token = None
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def _persist_state(self) -> None:
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.logger.info("memory_store_loaded", users=len(self.users), path=str(path))
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "role": user.role,
            "is_verified": user.is_verified,
            "is_active": user.is_active,
            "refresh_token": user.refresh_token,
            "email_verification_token_hash": user.email_verification_token_hash,
            "email_verification_expires_at": self._serialize_datetime(
                user.email_verification_expires_at
            ),
            "password_reset_token_hash": user.password_reset_token_hash,
            "password_reset_expires_at": self._serialize_datetime(
                user.password_reset_expires_at
            ),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            role=data.get("role", "user"),
            is_verified=data.get("is_verified", False),
            is_active=data.get("is_active", True),
            refresh_token=data.get("refresh_token"),
            email_verification_token_hash=data.get("email_verification_token_hash"),
            email_verification_expires_at=self._deserialize_datetime(
                data.get("email_verification_expires_at")
            ),
            password_reset_token_hash=data.get("password_reset_token_hash"),
            password_reset_expires_at=self._deserialize_datetime(
                data.get("password_reset_expires_at")
            ),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )
