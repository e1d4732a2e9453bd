import logging
from typing import List, Optional

from infrastructure.api.errors import ApiError
from infrastructure.api.token_lifecycle import TokenLifecycleManager
from use_cases.appeal_models import (
    Appeal,
    AppealAlreadyResolvedError,
    AppealFilter,
    AppealNotAllowedError,
    AppealNotFoundError,
    AppealValidationError,
    DuplicatePendingAppealError,
    InvalidAppealTransitionError,
    PagedAppeals,
    newest_first,
)
from use_cases.session_models import IdentitySnapshot

log = logging.getLogger(__name__)

# Older backends answer a duplicate with 400 and this message instead of 409.
DUPLICATE_PENDING_MESSAGE = "You already have a pending appeal"


class HttpAppealGateway:
    """Appeal gateway over the backend's /appeals endpoints. The subject is the token's owner."""

    def __init__(self, client: TokenLifecycleManager):
        self.client = client

    def create_appeal(self, subject: IdentitySnapshot, appeal_type: str, reason: str,
                      details: Optional[str] = None) -> Appeal:
        body = {"type": appeal_type, "reason": reason}
        if details:
            body["details"] = details
        try:
            response = self.client.post("/appeals", json=body)
        except ApiError as e:
            if e.status_code == 409 or (e.status_code == 400 and e.message == DUPLICATE_PENDING_MESSAGE):
                raise DuplicatePendingAppealError(e.message) from e
            if e.status_code == 400:
                raise AppealNotAllowedError(e.message) from e
            raise
        return Appeal.from_payload(response.data)

    def get_my_appeals(self, subject: IdentitySnapshot) -> List[Appeal]:
        response = self.client.get("/appeals/my-appeals")
        data = response.data
        if isinstance(data, dict):
            data = data.get("data") or []
        return newest_first([Appeal.from_payload(item) for item in data or []])

    def list_appeals(self, appeal_filter: AppealFilter) -> PagedAppeals:
        appeal_filter.validate()
        response = self.client.get("/appeals", params=appeal_filter.to_params())
        return PagedAppeals.from_payload(response.data or {})

    def get_appeal(self, appeal_id: str) -> Appeal:
        try:
            response = self.client.get(f"/appeals/{appeal_id}")
        except ApiError as e:
            if e.status_code == 404:
                raise AppealNotFoundError(e.message) from e
            raise
        return Appeal.from_payload(response.data)

    def review_appeal(self, appeal_id: str, status: str, admin_notes: Optional[str],
                      reviewer: IdentitySnapshot) -> Appeal:
        body = {"status": status}
        if admin_notes:
            body["adminNotes"] = admin_notes
        try:
            response = self.client.patch(f"/appeals/{appeal_id}/review", json=body)
        except ApiError as e:
            if e.status_code == 404:
                raise AppealNotFoundError(e.message) from e
            if e.status_code == 409:
                if "resolved" in e.message.lower():
                    raise AppealAlreadyResolvedError(e.message) from e
                raise InvalidAppealTransitionError(e.message) from e
            if e.status_code == 400:
                raise AppealValidationError(e.message) from e
            raise
        return Appeal.from_payload(response.data)
