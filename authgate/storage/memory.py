from __future__ import annotations

import contextlib
import copy
import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from authgate.logging import get_logger
from authgate.storage.common import (
    USER_MUTABLE_FIELDS,
    RedeemApply,
    deserialize_action_token,
    deserialize_session,
    deserialize_user,
    normalize_email,
    normalize_username,
    serialize_action_token,
    serialize_session,
    serialize_user,
)
from authgate.storage.errors import ConstraintViolation, StoreUnavailable
from authgate.storage.models import (
    ActionPurpose,
    ActionToken,
    ActionTokenState,
    Redemption,
    RedemptionStatus,
    Session,
    User,
)


class MemoryStore:
    """In-process credential, session and action-token store.

    Every public method takes the data lock for the whole of its work and never
    awaits while holding it, so each call is one atomic step with respect to
    concurrent callers. When ``state_dir`` is given the state is written to
    ``<state_dir>/state/memory_store.json`` after each mutation and reloaded on
    construction. A mutation whose write fails is rolled back before
    ``StoreUnavailable`` reaches the caller, so memory never runs ahead of disk.
    """

    def __init__(self, state_dir: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.action_tokens: Dict[str, ActionToken] = {}
        # RLock so helpers can re-enter from within a locked public method
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir is not None:
            self._load_state()

    @contextlib.contextmanager
    def _mutation(self):
        """Hold the data lock and restore the prior state if the body raises."""
        with self._data_lock:
            if self.state_dir is None:
                yield
                return
            snapshot = copy.deepcopy((self.users, self.sessions, self.action_tokens))
            try:
                yield
            except Exception:
                self.users, self.sessions, self.action_tokens = snapshot
                raise

    # user / credentials
    def _find_user_locked(self, predicate) -> Optional[User]:
        return next((u for u in self.users.values() if predicate(u)), None)

    def _check_unique_locked(
        self,
        *,
        email: Optional[str],
        username: Optional[str],
        exclude_id: Optional[str] = None,
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if email is not None and existing.email == normalize_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if (
                username is not None
                and existing.username is not None
                and normalize_username(existing.username) == normalize_username(username)
            ):
                raise ConstraintViolation("username already exists", {"field": "username"})

    async def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        providers: Optional[Dict[str, str]] = None,
        email_confirmed: bool = False,
        meta: Optional[dict] = None,
    ) -> User:
        with self._mutation():
            self._check_unique_locked(email=email, username=username)
            for provider, provider_uid in (providers or {}).items():
                if self._owner_of_identity_locked(provider, provider_uid):
                    raise ConstraintViolation(
                        "provider identity already linked", {"field": "provider"}
                    )
            user = User(
                id=str(uuid.uuid4()),
                email=normalize_email(email),
                username=username.strip() if username else None,
                password_hash=password_hash,
                password_algo=password_algo,
                providers=dict(providers or {}),
                email_confirmed=email_confirmed,
                meta=dict(meta) if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return copy.deepcopy(user)

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        target = normalize_email(email)
        with self._data_lock:
            user = self._find_user_locked(lambda u: u.email == target)
            return copy.deepcopy(user) if user else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        target = normalize_username(username)
        with self._data_lock:
            user = self._find_user_locked(
                lambda u: u.username is not None and normalize_username(u.username) == target
            )
            return copy.deepcopy(user) if user else None

    def _owner_of_identity_locked(self, provider: str, provider_uid: str) -> Optional[User]:
        return self._find_user_locked(lambda u: u.providers.get(provider) == provider_uid)

    async def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]:
        with self._data_lock:
            user = self._owner_of_identity_locked(provider, provider_uid)
            return copy.deepcopy(user) if user else None

    def _apply_user_changes_locked(self, user_id: str, changes: Dict[str, Any]) -> Optional[User]:
        unknown = set(changes) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {', '.join(sorted(unknown))}")
        current = self.users.get(user_id)
        if current is None:
            return None
        if "email" in changes or "username" in changes:
            self._check_unique_locked(
                email=changes.get("email"),
                username=changes.get("username"),
                exclude_id=user_id,
            )
        normalized = dict(changes)
        if normalized.get("email") is not None:
            normalized["email"] = normalize_email(normalized["email"])
        updated = replace(current, **normalized)
        self.users[user_id] = updated
        return updated

    async def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        with self._mutation():
            updated = self._apply_user_changes_locked(user_id, changes)
            if updated is None:
                return None
            self._persist_state()
            return copy.deepcopy(updated)

    async def link_provider(self, user_id: str, provider: str, provider_uid: str) -> User:
        with self._mutation():
            user = self.users.get(user_id)
            if user is None:
                raise ConstraintViolation("user not found for provider link", {"user_id": user_id})
            linked_uid = user.providers.get(provider)
            if linked_uid is not None and linked_uid != provider_uid:
                raise ConstraintViolation(
                    "provider already linked to another identity",
                    {"field": "provider", "provider": provider},
                )
            owner = self._owner_of_identity_locked(provider, provider_uid)
            if owner is not None and owner.id != user_id:
                raise ConstraintViolation(
                    "provider identity already linked", {"field": "provider", "provider": provider}
                )
            user.providers[provider] = provider_uid
            self._persist_state()
            return copy.deepcopy(user)

    async def unlink_provider(self, user_id: str, provider: str) -> Optional[User]:
        with self._mutation():
            user = self.users.get(user_id)
            if user is None:
                return None
            if user.providers.pop(provider, None) is not None:
                self._persist_state()
            return copy.deepcopy(user)

    # sessions
    async def insert_session(self, session: Session) -> None:
        with self._mutation():
            if session.key in self.sessions:
                raise ConstraintViolation("session already exists", {"field": "key"})
            self.sessions[session.key] = replace(session, token=None)
            self._persist_state()

    async def get_session(self, key: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(key)
            return replace(sess) if sess else None

    async def refresh_session(
        self,
        key: str,
        *,
        now: datetime,
        expires_at: datetime,
        new_key: Optional[str] = None,
    ) -> Optional[Session]:
        with self._mutation():
            sess = self.sessions.get(key)
            if sess is None or not sess.is_live(now):
                return None
            target_key = new_key or key
            if new_key and new_key in self.sessions:
                raise ConstraintViolation("session already exists", {"field": "key"})
            updated = replace(sess, key=target_key, refreshed_at=now, expires_at=expires_at)
            if target_key != key:
                self.sessions.pop(key, None)
            self.sessions[target_key] = updated
            self._persist_state()
            return replace(updated)

    async def delete_session(self, key: str, *, now: datetime) -> bool:
        """Remove the record; report only whether it was still live at ``now``."""
        with self._mutation():
            removed = self.sessions.pop(key, None)
            if removed is not None:
                self._persist_state()
            return removed is not None and removed.is_live(now)

    async def delete_user_sessions(
        self, user_id: str, *, now: datetime, except_key: Optional[str] = None
    ) -> int:
        with self._mutation():
            doomed = [
                key
                for key, sess in self.sessions.items()
                if sess.user_id == user_id and key != except_key
            ]
            live = 0
            for key in doomed:
                if self.sessions.pop(key).is_live(now):
                    live += 1
            if doomed:
                self._persist_state()
            return live

    async def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            found = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(found, key=lambda s: s.created_at)

    async def purge_expired_sessions(self, now: datetime) -> int:
        with self._mutation():
            stale = [key for key, sess in self.sessions.items() if not sess.is_live(now)]
            for key in stale:
                self.sessions.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    async def ping(self) -> None:
        return None

    # action tokens
    async def put_action_token(self, token: ActionToken) -> None:
        with self._mutation():
            superseded = [
                key
                for key, existing in self.action_tokens.items()
                if existing.user_id == token.user_id
                and existing.purpose == token.purpose
                and existing.state != ActionTokenState.CONSUMED
            ]
            for key in superseded:
                self.action_tokens.pop(key, None)
            self.action_tokens[token.key] = replace(token)
            self._persist_state()
            if superseded:
                self.logger.info(
                    "action_tokens_superseded",
                    user_id=token.user_id,
                    purpose=token.purpose.value,
                    superseded_count=len(superseded),
                )

    async def get_action_token(self, key: str) -> Optional[ActionToken]:
        with self._data_lock:
            token = self.action_tokens.get(key)
            return replace(token) if token else None

    async def mark_action_token_delivered(self, key: str) -> bool:
        with self._mutation():
            token = self.action_tokens.get(key)
            if token is None or token.state != ActionTokenState.REQUESTED:
                return False
            token.state = ActionTokenState.DELIVERED
            self._persist_state()
            return True

    async def redeem_action_token(
        self,
        key: str,
        purpose: ActionPurpose,
        *,
        now: datetime,
        apply: RedeemApply,
    ) -> Redemption:
        with self._mutation():
            token = self.action_tokens.get(key)
            if token is None:
                return Redemption(RedemptionStatus.MISSING)
            if token.purpose != purpose:
                return Redemption(RedemptionStatus.WRONG_PURPOSE)
            if token.state == ActionTokenState.CONSUMED:
                return Redemption(RedemptionStatus.CONSUMED)
            if not token.is_redeemable(now):
                return Redemption(RedemptionStatus.EXPIRED)
            user = self.users.get(token.user_id)
            if user is None:
                return Redemption(RedemptionStatus.MISSING)
            # A failing mutation leaves both the user and the token untouched
            changes = apply(replace(token), copy.deepcopy(user))
            updated = self._apply_user_changes_locked(user.id, changes) if changes else user
            token.state = ActionTokenState.CONSUMED
            token.consumed_at = now
            self._persist_state()
            return Redemption(
                RedemptionStatus.REDEEMED,
                user=copy.deepcopy(updated),
                token=replace(token),
            )

    async def purge_expired_action_tokens(self, now: datetime) -> int:
        with self._mutation():
            stale = [
                key
                for key, token in self.action_tokens.items()
                if token.state == ActionTokenState.CONSUMED or now >= token.expires_at
            ]
            for key in stale:
                self.action_tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.state_dir / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.state_dir is None:
            return
        state = {
            "users": [serialize_user(u) for u in self.users.values()],
            "sessions": [serialize_session(s) for s in self.sessions.values()],
            "action_tokens": [
                serialize_action_token(t) for t in self.action_tokens.values()
            ],
        }
        try:
            path = self._state_path()
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise StoreUnavailable(
                f"failed to persist in-memory state: {exc}", backend="memory"
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["key"]: deserialize_session(s) for s in data.get("sessions", [])
        }
        self.action_tokens = {
            t["key"]: deserialize_action_token(t) for t in data.get("action_tokens", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            action_tokens=len(self.action_tokens),
        )
        return True
