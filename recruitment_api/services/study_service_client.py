"""
HTTP client for the study-management service.

Implements the StudySystem interface of the sync engine over the study
service's management REST API. Transient failures (connection errors,
timeouts, 429 and 5xx responses) are retried with exponential backoff; every
failure that remains is raised as ExternalLookupError.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import requests
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from recruitment_api.config import Settings, settings as default_settings
from recruitment_sync.errors import ExternalLookupError
from recruitment_sync.interfaces import ParticipantStateFilter, ResponseFilter, StudySystem
from recruitment_sync.models import Study, StudyParticipant, SurveyResponse
from recruitment_sync.response_parser import SurveyVersion

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
PARTICIPANT_PAGE_SIZE = 100


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return False


class StudyServiceClient(StudySystem):
    """
    Study system reached over HTTP.

    Args:
        base_url: Root URL of the study service management API.
        api_key: Key sent in the ``Api-Key`` header.
        timeout: Per-request timeout in seconds.
        session: Optional preconfigured requests session.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Api-Key": api_key, "Accept": "application/json"})

    @classmethod
    def from_settings(cls, settings: Settings = default_settings) -> "StudyServiceClient":
        return cls(
            base_url=settings.study_service_url,
            api_key=settings.study_service_api_key,
            timeout=settings.study_service_timeout,
        )

    def _study_url(self, study_key: str, path: str = "") -> str:
        return f"{self.base_url}/v1/studies/{study_key}{path}"

    @retry(
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception(_is_transient),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            f"Retrying study service call after error: {retry_state.outcome.exception()}"
        ),
    )
    def _send(self, method: str, url: str, instance_id: str, **kwargs) -> Any:
        response = self.session.request(
            method,
            url,
            headers={"Instance-Id": instance_id},
            timeout=self.timeout,
            **kwargs,
        )
        response.raise_for_status()
        return response.json()

    def _request(self, method: str, url: str, instance_id: str, **kwargs) -> Any:
        try:
            return self._send(method, url, instance_id, **kwargs)
        except requests.RequestException as e:
            status = e.response.status_code if getattr(e, "response", None) is not None else None
            raise ExternalLookupError(
                f"study service request {method} {url} failed: {e}",
                details={"status": status},
            ) from e
        except ValueError as e:
            raise ExternalLookupError(f"study service returned invalid JSON for {url}: {e}") from e

    def get_participant(self, instance_id: str, study_key: str, participant_id: str) -> StudyParticipant:
        data = self._request("GET", self._study_url(study_key, f"/participants/{participant_id}"), instance_id)
        return StudyParticipant.from_dict(data)

    def iterate_participants(
        self,
        instance_id: str,
        study_key: str,
        participant_filter: ParticipantStateFilter,
        callback: Callable[[StudyParticipant], None],
    ) -> None:
        params: Dict[str, Any] = {"limit": PARTICIPANT_PAGE_SIZE}
        if participant_filter.exclude_statuses:
            params["excludeStatus"] = list(participant_filter.exclude_statuses)
        if participant_filter.entered_after is not None:
            params["enteredAfter"] = participant_filter.entered_after
        if participant_filter.entered_before is not None:
            params["enteredBefore"] = participant_filter.entered_before

        page = 1
        while True:
            params["page"] = page
            data = self._request("GET", self._study_url(study_key, "/participants"), instance_id, params=params)
            for item in data.get("items") or []:
                callback(StudyParticipant.from_dict(item))

            total_pages = int(data.get("totalPages") or 0)
            if page >= total_pages:
                return
            page += 1

    def get_responses(
        self,
        instance_id: str,
        study_key: str,
        response_filter: ResponseFilter,
        sort_ascending: bool,
        page: int,
        page_size: int,
    ) -> List[SurveyResponse]:
        params: Dict[str, Any] = {
            "sort": "asc" if sort_ascending else "desc",
            "page": page,
            "limit": page_size,
        }
        if response_filter.participant_id:
            params["participantId"] = response_filter.participant_id
        if response_filter.survey_key:
            params["surveyKey"] = response_filter.survey_key
        if response_filter.arrived_from is not None:
            params["from"] = response_filter.arrived_from
        if response_filter.arrived_until is not None:
            params["until"] = response_filter.arrived_until

        data = self._request("GET", self._study_url(study_key, "/responses"), instance_id, params=params)
        return [SurveyResponse.from_dict(r) for r in data.get("items") or []]

    def find_confidential_responses(
        self,
        instance_id: str,
        study_key: str,
        confidential_id: str,
        item_key: str,
    ) -> List[SurveyResponse]:
        data = self._request(
            "POST",
            self._study_url(study_key, "/confidential-responses"),
            instance_id,
            json={"participantId": confidential_id, "key": item_key},
        )
        return [SurveyResponse.from_dict(r) for r in data.get("responses") or []]

    def get_study(self, instance_id: str, study_key: str) -> Study:
        data = self._request("GET", self._study_url(study_key), instance_id)
        return Study.from_dict(data)

    def load_survey_versions(
        self,
        instance_id: str,
        study_key: str,
        survey_key: str,
        excluded_columns: Optional[List[str]] = None,
    ) -> List[SurveyVersion]:
        data = self._request("GET", self._study_url(study_key, f"/surveys/{survey_key}/versions"), instance_id)
        versions = [SurveyVersion.from_dict(v) for v in data.get("versions") or []]

        excluded = set(excluded_columns or [])
        if excluded:
            for version in versions:
                version.questions = [q for q in version.questions if q.id not in excluded]
        return versions
