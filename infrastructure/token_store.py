"""
Token Store.

Holds the current token pair and identity snapshot behind one lock and
mirrors every write to durable storage. Readers get immutable snapshots,
so no caller can observe a half-written pair.

The store has a single writer role: the token lifecycle manager and the
login/logout entry points in `auth`. Everything else only reads.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

from infrastructure.repositories.sqlite_token_repository import SQLiteTokenRepository
from use_cases.session_models import IdentitySnapshot, TokenPair
from utils.event_channel import EventChannel

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreSnapshot:
    tokens: Optional[TokenPair]
    identity: Optional[IdentitySnapshot]
    epoch: int

    @property
    def access_token(self) -> Optional[str]:
        return self.tokens.access_token if self.tokens else None

    @property
    def refresh_token(self) -> Optional[str]:
        return self.tokens.refresh_token if self.tokens else None


class TokenStore:
    def __init__(self, repository: Optional[SQLiteTokenRepository] = None, events: Optional[EventChannel] = None):
        self._repository = repository
        self._events = events
        self._lock = threading.RLock()
        self._tokens: Optional[TokenPair] = None
        self._identity: Optional[IdentitySnapshot] = None
        # Bumped on every login and logout; a refresh keeps the same epoch.
        self._epoch = 0

    def load(self) -> StoreSnapshot:
        """Restore the persisted session, if any, into memory."""
        if self._repository is None:
            return self.snapshot()
        tokens, identity = self._repository.load()
        with self._lock:
            self._tokens = tokens
            self._identity = identity if tokens is not None else None
            if tokens is not None:
                self._epoch += 1
            return self.snapshot()

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            return StoreSnapshot(tokens=self._tokens, identity=self._identity, epoch=self._epoch)

    @property
    def access_token(self) -> Optional[str]:
        return self.snapshot().access_token

    @property
    def refresh_token(self) -> Optional[str]:
        return self.snapshot().refresh_token

    @property
    def identity(self) -> Optional[IdentitySnapshot]:
        return self.snapshot().identity

    @property
    def epoch(self) -> int:
        return self.snapshot().epoch

    def start_session(self, tokens: TokenPair, identity: Optional[IdentitySnapshot]) -> StoreSnapshot:
        with self._lock:
            self._persist(tokens, identity)
            self._tokens = tokens
            self._identity = identity
            self._epoch += 1
            snap = self.snapshot()
        self._publish("session_started", user_id=identity.id if identity else None)
        return snap

    def update_tokens(self, access_token: str, refresh_token: Optional[str] = None,
                      expires_in: Optional[int] = None, expected_epoch: Optional[int] = None) -> StoreSnapshot:
        """Swap in a refreshed access token, and the rotated refresh token if one was issued."""
        with self._lock:
            if self._tokens is None:
                raise RuntimeError("Cannot update tokens of a logged-out session")
            if expected_epoch is not None and expected_epoch != self._epoch:
                raise RuntimeError("Session changed while the token was being refreshed")
            tokens = replace(
                self._tokens,
                access_token=access_token,
                refresh_token=refresh_token or self._tokens.refresh_token,
                expires_in=expires_in if expires_in is not None else self._tokens.expires_in,
                issued_at=datetime.now(timezone.utc),
            )
            self._persist(tokens, self._identity)
            self._tokens = tokens
            snap = self.snapshot()
        self._publish("tokens_refreshed", rotated=refresh_token is not None)
        return snap

    def set_identity(self, identity: IdentitySnapshot, expected_epoch: Optional[int] = None) -> StoreSnapshot:
        """Replace the identity snapshot wholesale."""
        with self._lock:
            if self._tokens is None:
                raise RuntimeError("Cannot set identity on a logged-out session")
            if expected_epoch is not None and expected_epoch != self._epoch:
                raise RuntimeError("Session changed while the identity was being fetched")
            self._persist(self._tokens, identity)
            previous = self._identity
            self._identity = identity
            snap = self.snapshot()
        if previous != identity:
            self._publish("identity_changed", identity=identity)
        return snap

    def clear(self, reason: str = "logout", expected_epoch: Optional[int] = None) -> bool:
        """Drop tokens and identity together.

        Returns False if nothing was stored, or if `expected_epoch` is given and
        a different session has been started since.
        """
        with self._lock:
            if expected_epoch is not None and expected_epoch != self._epoch:
                return False
            had_session = self._tokens is not None or self._identity is not None
            if self._repository is not None:
                self._repository.clear()
            self._tokens = None
            self._identity = None
            if had_session:
                self._epoch += 1
        if had_session:
            log.info(f"Session cleared ({reason})")
            self._publish("logged_out", reason=reason)
        return had_session

    def _persist(self, tokens: TokenPair, identity: Optional[IdentitySnapshot]):
        if self._repository is not None:
            self._repository.save(tokens, identity)

    def _publish(self, event: str, **payload):
        if self._events is not None:
            self._events.publish(event, **payload)
