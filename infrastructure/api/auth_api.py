import logging
from typing import Optional, Tuple

from infrastructure.api.errors import ApiError, TransportError
from infrastructure.api.token_lifecycle import TokenLifecycleManager
from use_cases.session_models import IdentitySnapshot, TokenPair

log = logging.getLogger(__name__)


class AuthApi:
    def __init__(self, client: TokenLifecycleManager):
        self.client = client

    def login(self, email: str, password: str) -> Tuple[TokenPair, IdentitySnapshot]:
        response = self.client.request(
            "POST", "/auth/login", json={"email": email, "password": password}, authenticated=False
        )
        data = response.data or {}
        try:
            tokens = TokenPair.from_payload(data.get("tokens") or {})
            identity = IdentitySnapshot.from_payload(data.get("user") or {})
        except ValueError as e:
            raise ApiError(f"Malformed login response: {e}", response.status_code, data) from e
        return tokens, identity

    def logout(self, refresh_token: Optional[str]) -> bool:
        """Revoke the refresh token server-side. Best effort: local logout never depends on it."""
        if not refresh_token:
            return False
        try:
            self.client.request("POST", "/auth/logout", json={"refreshToken": refresh_token}, authenticated=False)
            return True
        except (ApiError, TransportError) as e:
            log.warning(f"Server-side logout failed: {e}")
            return False

    def get_me(self) -> Tuple[IdentitySnapshot, int]:
        """Current identity, with the epoch of the session that fetched it."""
        response = self.client.get("/users/me")
        try:
            return IdentitySnapshot.from_payload(response.data or {}), response.epoch
        except ValueError as e:
            raise ApiError(f"Malformed /users/me response: {e}", response.status_code, response.data) from e
