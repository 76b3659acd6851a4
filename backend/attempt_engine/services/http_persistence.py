"""
HttpPersistence - PersistenceBoundary over the engine's REST API.

Lets an engine instance run next to the learner (desktop client, kiosk,
test harness) while storage and grading stay on the server. Transport
errors and 5xx responses become PersistenceFailure (retryable); 409
becomes StaleAttemptState and 404 AttemptNotFound.
"""

import httpx

from attempt_engine.config import HTTP_TIMEOUT_SECONDS
from attempt_engine.core.model import Attempt, SubmissionTrigger
from attempt_engine.errors import (
    AttemptNotFound, InvalidOperation, PersistenceFailure, StaleAttemptState,
)
from attempt_engine.logging_config import get_logger, log_with_context
from attempt_engine.schemas import ProgressUpdate, SubmissionResult
from attempt_engine.serialization import attempt_from_dict

logger = get_logger("sync")


class HttpPersistence:
    """
    Persistence boundary over the REST API, for engines running off-server.

    Transport errors and 5xx map to PersistenceFailure (retryable), 404 to
    AttemptNotFound, 409 to StaleAttemptState, other 4xx to InvalidOperation.
    """

    def __init__(self, base_url: str = None, client: httpx.Client = None,
                 timeout: float = HTTP_TIMEOUT_SECONDS):
        if client is None:
            client = httpx.Client(base_url=base_url, timeout=timeout)
        self.client = client

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            log_with_context(logger, "WARNING", "{} {} failed: {}".format(method, url, e))
            raise PersistenceFailure("Storage unreachable: {}".format(e)) from e

        if response.status_code >= 500:
            raise PersistenceFailure("Storage error {}".format(response.status_code))
        detail = None
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = response.text
            if response.status_code == 404:
                raise AttemptNotFound(detail or "Attempt not found")
            if response.status_code == 409:
                raise StaleAttemptState(detail or "Attempt state is stale; refresh and retry")
            raise InvalidOperation(detail or "Request rejected ({})".format(response.status_code))
        return response.json()

    def start_or_resume_attempt(self, user_id: str, template_id: str) -> Attempt:
        data = self._request("POST", "/api/attempts/start",
                             json={"user_id": user_id, "template_id": template_id})
        return attempt_from_dict(data)

    def load_attempt_detail(self, attempt_id: str) -> Attempt:
        return attempt_from_dict(self._request("GET", "/api/attempts/{}".format(attempt_id)))

    def save_progress(self, attempt_id: str, update: ProgressUpdate) -> bool:
        """PATCH one flush. False means storage discarded it as out of order."""
        data = self._request("PATCH", "/api/attempts/{}/save-progress".format(attempt_id),
                             json=update.model_dump(mode="json"))
        return bool(data.get("applied"))

    def submit_attempt(self, attempt_id: str, trigger: SubmissionTrigger) -> SubmissionResult:
        """Idempotent on the server; a retry after a lost reply gets the stored result."""
        data = self._request("POST", "/api/attempts/{}/submit".format(attempt_id),
                             json={"trigger": trigger.value})
        return SubmissionResult.model_validate(data)

    def cancel_attempt(self, attempt_id: str) -> None:
        self._request("POST", "/api/attempts/{}/cancel".format(attempt_id))
