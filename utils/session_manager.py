"""
SESSION CONTEXT CONTRACT

One SessionContext per logical client session. It is built once (see
use_cases.bootstrap.run_startup), passed explicitly to the `auth` entry
points and the use cases, and torn down when the client exits.

Owned collaborators:

store: TokenStore
    current token pair + identity snapshot, persisted to settings.session_db
    writers: TokenLifecycleManager, auth.login / auth.logout

client: TokenLifecycleManager
    every outbound HTTP call goes through it

auth_api: AuthApi
    /auth/login, /auth/logout, /users/me

appeals: AppealWorkflow
    subject + operator appeal operations

events: EventChannel
    session_started, identity_changed, tokens_refreshed, logged_out,
    appeal_created, appeal_resolved

renewal: BackgroundRenewal | None
    proactive token refresh, rescheduled on session_started / tokens_refreshed
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

import requests

from infrastructure.api.appeals_api import HttpAppealGateway
from infrastructure.api.auth_api import AuthApi
from infrastructure.api.token_lifecycle import BackgroundRenewal, TokenLifecycleManager
from infrastructure.repositories.sqlite_audit_repository import SQLiteAuditRepository
from infrastructure.repositories.sqlite_token_repository import SQLiteTokenRepository
from infrastructure.token_store import TokenStore
from settings import Settings
from use_cases.appeal_flow import AppealGateway, AppealWorkflow
from use_cases.session_models import IdentitySnapshot
from use_cases.status_gate import ApplicationMode, DeletionCountdown, compute_mode, countdown_for
from utils.event_channel import EventChannel, Subscriber

log = logging.getLogger(__name__)


class SessionContext:
    def __init__(
        self,
        settings: Settings,
        http_session: Optional[requests.Session] = None,
        appeal_gateway: Optional[AppealGateway] = None,
    ):
        self.settings = settings
        self.events = EventChannel()
        self.audit_repo = SQLiteAuditRepository(settings.audit_db)
        self.token_repo = SQLiteTokenRepository(settings.session_db)
        self.store = TokenStore(self.token_repo, events=self.events)
        self.client = TokenLifecycleManager(
            self.store,
            settings.api_base_url,
            session=http_session,
            timeout=settings.request_timeout,
            refresh_timeout=settings.refresh_timeout,
            audit_repo=self.audit_repo,
        )
        self.auth_api = AuthApi(self.client)
        self.appeals = AppealWorkflow(
            appeal_gateway or HttpAppealGateway(self.client),
            identity_provider=lambda: self.store.identity,
            audit_repo=self.audit_repo,
            events=self.events,
        )
        self.renewal = (
            BackgroundRenewal(self.client, ratio=settings.token_renewal_ratio)
            if settings.background_renewal else None
        )
        self.last_identity_refresh: Optional[float] = None
        self._unsubscribers: List[Callable[[], None]] = []
        self._initialized = False

    def init(self) -> "SessionContext":
        """Create databases, restore the persisted session and start background renewal."""
        if self._initialized:
            return self
        self.audit_repo.init_db()
        self.token_repo.init_db()

        self._unsubscribers.append(self.events.subscribe("logged_out", self._on_logged_out))
        if self.renewal is not None:
            self._unsubscribers.append(self.events.subscribe("session_started", self._reschedule_renewal))
            self._unsubscribers.append(self.events.subscribe("tokens_refreshed", self._reschedule_renewal))

        snap = self.store.load()
        if snap.tokens is not None:
            log.info("Restored persisted session")
            if self.renewal is not None:
                self.renewal.start()
        self._initialized = True
        return self

    def subscribe(self, event: str, callback: Subscriber) -> Callable[[], None]:
        return self.events.subscribe(event, callback)

    def teardown(self):
        """Stop timers and drop subscriptions. The persisted session is kept for the next start."""
        if self.renewal is not None:
            self.renewal.stop()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.events.clear()
        self.client.session.close()
        self._initialized = False

    # --- read-only views ---

    @property
    def identity(self) -> Optional[IdentitySnapshot]:
        return self.store.identity

    @property
    def is_authenticated(self) -> bool:
        return self.store.access_token is not None

    @property
    def mode(self) -> ApplicationMode:
        return compute_mode(self.store.identity)

    def countdown(self, now: Optional[datetime] = None) -> Optional[DeletionCountdown]:
        return countdown_for(self.store.identity, now=now, retention_days=self.settings.ban_retention_days)

    # --- subscribers ---

    def _on_logged_out(self, _event, _payload):
        self.appeals.forget()
        self.last_identity_refresh = None
        if self.renewal is not None:
            self.renewal.stop()

    def _reschedule_renewal(self, _event, _payload):
        self.renewal.start()
