from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from authflow.logging import get_logger
from authflow.storage.errors import ConstraintViolation
from authflow.storage.models import RefreshToken, User, _parse_datetime, utcnow


class MemoryStore:
    """In-process user directory persisted to a JSON file under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/authflow") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock for all data operations to ensure thread safety
        # Using RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        return None

    # users
    def create_user(
        self,
        email: str,
        full_name: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
        is_verified: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        """Insert a user and its credential in one step.

        Raises ConstraintViolation when the email is already taken.
        """
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                full_name=full_name,
                is_verified=is_verified,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self.credentials[user.id] = (password_hash, password_algo)
            self._persist_state()
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def record_login(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = utcnow()
            self._persist_state()

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "refresh token user missing", {"user_id": user_id}
                )
            if token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "token_hash"}
                )
            record = RefreshToken(
                token_hash=token_hash,
                user_id=user_id,
                created_at=utcnow(),
                expires_at=expires_at,
            )
            self.refresh_tokens[token_hash] = record
            self._persist_state()
            return record

    def consume_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        """Remove and return the record; only one caller can ever receive it."""
        with self._data_lock:
            record = self.refresh_tokens.pop(token_hash, None)
            if record is not None:
                self._persist_state()
            return record

    def delete_refresh_token(self, token_hash: str) -> bool:
        return self.consume_refresh_token(token_hash) is not None

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            stale = [h for h, rec in self.refresh_tokens.items() if rec.user_id == user_id]
            for token_hash in stale:
                self.refresh_tokens.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            stale = [
                h for h, rec in self.refresh_tokens.items() if rec.expires_at <= cutoff
            ]
            for token_hash in stale:
                self.refresh_tokens.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.refresh_tokens = {
            r["token_hash"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        return True

    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "is_verified": user.is_verified,
            "is_active": user.is_active,
            "created_at": user.created_at.isoformat(),
            "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
            "meta": user.meta,
        }

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        last_login = data.get("last_login_at")
        return User(
            id=str(data["id"]),
            email=data["email"],
            full_name=data.get("full_name", ""),
            is_verified=data.get("is_verified", False),
            is_active=data.get("is_active", True),
            created_at=_parse_datetime(data["created_at"]),
            last_login_at=_parse_datetime(last_login) if last_login else None,
            meta=data.get("meta"),
        )

    @staticmethod
    def _serialize_refresh_token(record: RefreshToken) -> dict:
        return {
            "token_hash": record.token_hash,
            "user_id": record.user_id,
            "created_at": record.created_at.isoformat(),
            "expires_at": record.expires_at.isoformat(),
        }

    @staticmethod
    def _deserialize_refresh_token(data: dict) -> RefreshToken:
        return RefreshToken(
            token_hash=data["token_hash"],
            user_id=data["user_id"],
            created_at=_parse_datetime(data["created_at"]),
            expires_at=_parse_datetime(data["expires_at"]),
        )
