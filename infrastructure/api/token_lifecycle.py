"""
Token lifecycle manager.

Every outbound call goes through `TokenLifecycleManager.request`, which
attaches the current bearer token, and on a 401 performs at most one
refresh-and-retry. Concurrent 401s share a single in-flight refresh.
When the session cannot be refreshed the token store is cleared and the
caller gets a typed error; redirecting is left to the consumer.
"""

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from infrastructure.api.errors import (
    ApiError,
    AuthorizationError,
    RefreshFailedError,
    SessionExpiredError,
    StaleSessionError,
    TransportError,
    UnauthenticatedError,
)
from infrastructure.repositories.sqlite_audit_repository import AuditAction
from infrastructure.token_store import TokenStore
from use_cases.session_models import parse_expires_in

log = logging.getLogger(__name__)

REFRESH_PATH = "/auth/refresh"


@dataclass(frozen=True)
class ApiResponse:
    status_code: int
    data: Any
    epoch: int


def _error_message(payload: Any, status_code: int) -> str:
    if isinstance(payload, dict):
        message = payload.get("error") or payload.get("message")
        if message:
            return str(message)
    return f"HTTP {status_code}"


def _response_payload(response) -> Any:
    if response.status_code == 204 or not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class TokenLifecycleManager:
    def __init__(
        self,
        store: TokenStore,
        base_url: str,
        session: Optional[requests.Session] = None,
        timeout: float = 30,
        refresh_timeout: float = 10,
        audit_repo=None,
    ):
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.refresh_timeout = refresh_timeout
        self.audit_repo = audit_repo
        self._refresh_lock = threading.Lock()
        self._refresh_flight: Optional[Future] = None
        self._refresh_flight_epoch: Optional[int] = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    # --- public API ---

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        return self.request("GET", path, params=params)

    def post(self, path: str, json: Any = None) -> ApiResponse:
        return self.request("POST", path, json=json)

    def patch(self, path: str, json: Any = None) -> ApiResponse:
        return self.request("PATCH", path, json=json)

    def request(self, method: str, path: str, *, json: Any = None,
                params: Optional[Dict[str, Any]] = None, authenticated: bool = True) -> ApiResponse:
        snap = self.store.snapshot()
        token = snap.access_token if authenticated else None

        response = self._send(method, path, json, params, token)
        if response.status_code == 401 and authenticated:
            response, token = self._recover_unauthorized(method, path, json, params, token, response, snap.epoch)

        if token is not None and self.store.epoch != snap.epoch:
            # Logged out (or logged in as someone else) while this call was in flight.
            raise StaleSessionError(f"Session changed during {method} {path}", response.status_code)

        payload = _response_payload(response)
        if not 200 <= response.status_code < 300:
            raise ApiError(_error_message(payload, response.status_code), response.status_code, payload)
        return ApiResponse(status_code=response.status_code, data=payload, epoch=snap.epoch)

    def refresh_now(self) -> bool:
        """Proactively refresh the current access token. On failure the session is logged out."""
        snap = self.store.snapshot()
        if snap.access_token is None:
            return False
        try:
            self._refresh_single_flight(snap.access_token, snap.epoch)
            return True
        except (RefreshFailedError, StaleSessionError):
            return False

    # --- internals ---

    def _send(self, method, path, json, params, token):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            return self.session.request(
                method, self._url(path), json=json, params=params, headers=headers, timeout=self.timeout
            )
        except requests.Timeout as e:
            raise TransportError(f"Request timed out: {method} {path}") from e
        except requests.RequestException as e:
            raise TransportError(f"Network error on {method} {path}: {e}") from e

    def _recover_unauthorized(self, method, path, json, params, sent_token, response, epoch):
        original_payload = _response_payload(response)
        try:
            new_token = self._refresh_single_flight(sent_token, epoch)
        except RefreshFailedError as e:
            if sent_token is None:
                raise UnauthenticatedError("Authentication required", 401, original_payload) from e
            raise SessionExpiredError(SessionExpiredError.USER_MESSAGE, 401, original_payload) from e

        retried = self._send(method, path, json, params, new_token)
        if retried.status_code == 401:
            # Retried once already; a second refresh could loop forever.
            raise AuthorizationError(
                _error_message(_response_payload(retried), 401), 401, _response_payload(retried)
            )
        return retried, new_token

    def _refresh_single_flight(self, sent_token: Optional[str], epoch: int) -> str:
        """Return an access token of session `epoch`, refreshing at most once across callers.

        Raises StaleSessionError when a different session has started since
        `epoch`; its tokens are never handed to a request of the old one.
        """
        missing_refresh_token = False
        with self._refresh_lock:
            snap = self.store.snapshot()
            if snap.epoch != epoch:
                raise StaleSessionError("Session changed before the token could be refreshed", 401)
            if snap.access_token and snap.access_token != sent_token:
                # Someone else already refreshed this session since the request was sent.
                return snap.access_token
            flight = self._refresh_flight
            owner = flight is None or self._refresh_flight_epoch != epoch
            if owner:
                if snap.refresh_token:
                    flight = Future()
                    self._refresh_flight = flight
                    self._refresh_flight_epoch = epoch
                else:
                    missing_refresh_token = True

        if missing_refresh_token:
            self._expire_session("refresh_missing", had_token=sent_token is not None, epoch=epoch)
            raise RefreshFailedError("No refresh token available")

        if owner:
            try:
                actor = snap.identity.id if snap.identity else None
                flight.set_result(self._call_refresh(snap.refresh_token, epoch, actor))
            except Exception as e:
                # Clear before releasing waiters so no late arrival starts another refresh.
                if self._expire_session("refresh_failed", had_token=True, epoch=epoch):
                    failure = e if isinstance(e, RefreshFailedError) else RefreshFailedError(str(e))
                else:
                    # The session was replaced mid-refresh; its successor stays logged in.
                    failure = StaleSessionError(f"Session changed during token refresh: {e}", 401)
                flight.set_exception(failure)
            finally:
                with self._refresh_lock:
                    if self._refresh_flight is flight:
                        self._refresh_flight = None
                        self._refresh_flight_epoch = None
        return flight.result()

    def _call_refresh(self, refresh_token: str, epoch: int, actor_user_id: Optional[str] = None) -> str:
        log.info("Refreshing access token")
        try:
            response = self.session.post(
                self._url(REFRESH_PATH), json={"refreshToken": refresh_token}, timeout=self.refresh_timeout
            )
        except requests.RequestException as e:
            self._audit(AuditAction.TOKEN_REFRESH_FAIL, {"reason": "transport"}, actor_user_id, result="fail")
            raise RefreshFailedError(f"Refresh transport failure: {e}") from e

        if not 200 <= response.status_code < 300:
            reason = f"http_{response.status_code}"
            self._audit(AuditAction.TOKEN_REFRESH_FAIL, {"reason": reason}, actor_user_id, result="fail")
            raise RefreshFailedError(f"Refresh rejected: HTTP {response.status_code}")

        payload = _response_payload(response)
        access_token = payload.get("accessToken") if isinstance(payload, dict) else None
        if not access_token:
            self._audit(AuditAction.TOKEN_REFRESH_FAIL, {"reason": "malformed_response"}, actor_user_id, result="fail")
            raise RefreshFailedError("Refresh response has no accessToken")

        try:
            self.store.update_tokens(
                access_token,
                refresh_token=payload.get("refreshToken"),
                expires_in=parse_expires_in(payload.get("expiresIn")),
                expected_epoch=epoch,
            )
        except (RuntimeError, ValueError) as e:
            raise RefreshFailedError(f"Could not store refreshed token: {e}") from e

        reason = "rotated" if payload.get("refreshToken") else "access_only"
        self._audit(AuditAction.TOKEN_REFRESH, {"reason": reason}, actor_user_id)
        return access_token

    def _expire_session(self, reason: str, had_token: bool, epoch: int) -> bool:
        """Log out session `epoch`. A session started after it is left alone."""
        snap = self.store.snapshot()
        identity = snap.identity if snap.epoch == epoch else None
        cleared = self.store.clear(reason=reason, expected_epoch=epoch)
        if cleared and had_token:
            log.warning(f"Session expired: {reason}")
            self._audit(
                AuditAction.SESSION_EXPIRED,
                {"reason": reason},
                actor_user_id=identity.id if identity else None,
                result="fail",
            )
        return cleared

    def _audit(self, action, metadata, actor_user_id=None, result="success"):
        if self.audit_repo is None:
            return
        if actor_user_id is None:
            identity = self.store.identity
            actor_user_id = identity.id if identity else None
        self.audit_repo.log_action(
            action,
            target_type="session",
            actor_user_id=actor_user_id,
            metadata=metadata,
            result=result,
        )


class BackgroundRenewal:
    """Refreshes the access token at `ratio` of its lifetime so steady-state requests never see a 401."""

    def __init__(self, manager: TokenLifecycleManager, ratio: float = 0.85, min_delay: float = 5.0):
        if not 0 < ratio < 1:
            raise ValueError("ratio must be between 0 and 1")
        self.manager = manager
        self.ratio = ratio
        self.min_delay = min_delay
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None

    def next_delay(self, now: Optional[datetime] = None) -> Optional[float]:
        snap = self.manager.store.snapshot()
        tokens = snap.tokens
        if tokens is None or not tokens.expires_in or not tokens.refresh_token:
            return None
        now = now or datetime.now(timezone.utc)
        elapsed = (now - tokens.issued_at).total_seconds() if tokens.issued_at else 0.0
        return max(self.min_delay, tokens.expires_in * self.ratio - elapsed)

    def start(self) -> Optional[float]:
        """(Re)schedule the next renewal. Returns the delay in seconds, or None when nothing to renew."""
        delay = self.next_delay()
        with self._lock:
            self._cancel()
            if delay is None:
                return None
            self._timer = threading.Timer(delay, self._fire)
            self._timer.daemon = True
            self._timer.start()
        log.debug(f"Next token renewal in {delay:.0f}s")
        return delay

    def stop(self):
        with self._lock:
            self._cancel()

    def _cancel(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self):
        # Success publishes tokens_refreshed, which reschedules through the session context.
        if not self.manager.refresh_now():
            log.info("Background token renewal failed; session logged out")
