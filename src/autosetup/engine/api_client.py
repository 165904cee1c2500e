"""AutoSetup API client — the tour API endpoints.

``GET  /get-configuration``  configuration, ordered steps with nested
                             actions/branches, and this client's progress.
``POST /save-progress``      upsert one step status (last write wins).
``POST /save-branch-choice`` upsert one branch choice.
``POST /create-step``        append a captured step (authoring side).

Calls are blocking (requests.Session); async callers push them onto a worker
thread with ``asyncio.to_thread``.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from autosetup.engine.errors import ConfigFetchFailed, ProgressSyncFailed
from autosetup.engine.tour import ProgressEntry, Step, Tour
from autosetup.models import (
    DEFAULT_API_BASE,
    DEFAULT_HTTP_TIMEOUT,
    CREATE_STEP_PATH,
    GET_CONFIGURATION_PATH,
    SAVE_BRANCH_CHOICE_PATH,
    SAVE_PROGRESS_PATH,
)

logger = logging.getLogger("autosetup.engine.api_client")


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return str(body)[:200]


class TourApiClient:
    """Blocking HTTP client for the tour API."""

    def __init__(self, base_url: str = DEFAULT_API_BASE, timeout: float = DEFAULT_HTTP_TIMEOUT) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})

    @property
    def base_url(self) -> str:
        return self._base_url

    def close(self) -> None:
        self._session.close()

    def fetch_configuration(self, config_id: str, api_key: str, client_id: str | None = None) -> Tour:
        """Fetch a tour and this client's progress.

        Raises:
            ConfigFetchFailed: On any network, HTTP or payload error.
        """
        params = {"configId": config_id, "apiKey": api_key}
        if client_id:
            params["clientId"] = client_id
        url = self._base_url + GET_CONFIGURATION_PATH
        try:
            response = self._session.get(url, params=params, timeout=self._timeout)
        except requests.RequestException as exc:
            raise ConfigFetchFailed(f"Could not reach {url}: {exc}") from exc

        if response.status_code != 200:
            raise ConfigFetchFailed(f"get-configuration returned {response.status_code}: {_error_message(response)}")
        try:
            data = response.json()
        except ValueError as exc:
            raise ConfigFetchFailed("get-configuration returned a non-JSON body") from exc
        if not isinstance(data, dict) or not isinstance(data.get("configuration"), dict):
            raise ConfigFetchFailed("get-configuration response has no configuration object")

        try:
            tour = Tour.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ConfigFetchFailed(f"get-configuration returned a malformed tour: {exc}") from exc
        logger.info(
            "Loaded configuration %s (%d steps, %d progress entries)",
            tour.configuration.id,
            len(tour.steps),
            len(tour.progress),
        )
        return tour

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        url = self._base_url + path
        try:
            response = self._session.post(url, json=body, timeout=self._timeout)
        except requests.RequestException as exc:
            raise ProgressSyncFailed(f"Could not reach {url}: {exc}") from exc
        if response.status_code >= 400:
            raise ProgressSyncFailed(f"{path} returned {response.status_code}: {_error_message(response)}")
        try:
            data = response.json()
        except ValueError:
            data = {}
        return data if isinstance(data, dict) else {}

    def save_progress(self, client_id: str, configuration_id: str, api_key: str, entry: ProgressEntry) -> dict[str, Any]:
        """Upsert one progress entry.  Repeating an identical call is safe.

        Raises:
            ProgressSyncFailed: On any network or HTTP error.
        """
        body: dict[str, Any] = {
            "client_id": client_id,
            "configuration_id": configuration_id,
            "step_id": entry.step_id,
            "status": entry.status,
            "api_key": api_key,
        }
        if entry.completed_at:
            body["completed_at"] = entry.completed_at
        if entry.skipped_at:
            body["skipped_at"] = entry.skipped_at
        return self._post(SAVE_PROGRESS_PATH, body)

    def save_branch_choice(self, client_id: str, configuration_id: str, step_id: str, branch_id: str) -> dict[str, Any]:
        """Upsert the branch chosen at ``step_id``.

        Raises:
            ProgressSyncFailed: On any network or HTTP error.
        """
        body = {
            "clientId": client_id,
            "configurationId": configuration_id,
            "stepId": step_id,
            "branchId": branch_id,
        }
        return self._post(SAVE_BRANCH_CHOICE_PATH, body)

    def create_step(
        self,
        configuration_id: str,
        api_key: str,
        selector: str,
        title: str,
        step_type: str = "highlight",
        description: str | None = None,
        position: str = "auto",
    ) -> Step:
        """Append a step captured on a live page; returns the stored step.

        Raises:
            ProgressSyncFailed: On any network or HTTP error.
        """
        body = {
            "configuration_id": configuration_id,
            "step_type": step_type,
            "selector": selector,
            "title": title,
            "description": description,
            "position": position,
        }
        url = self._base_url + CREATE_STEP_PATH
        try:
            response = self._session.post(url, json=body, headers={"x-api-key": api_key}, timeout=self._timeout)
        except requests.RequestException as exc:
            raise ProgressSyncFailed(f"Could not reach {url}: {exc}") from exc
        if response.status_code >= 400:
            raise ProgressSyncFailed(f"{CREATE_STEP_PATH} returned {response.status_code}: {_error_message(response)}")
        data = response.json()
        return Step.from_dict(data.get("step") or {})
