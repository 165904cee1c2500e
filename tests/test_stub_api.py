"""Tests for the tour API client against the local stub server."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

from autosetup.engine.api_client import TourApiClient
from autosetup.engine.errors import ConfigFetchFailed, ProgressSyncFailed
from autosetup.engine.tour import COMPLETED, ProgressEntry, Tour
from autosetup.server.stub_api import TourApiServer


@pytest.fixture
def server(sample_tour: Tour):
    with TourApiServer(sample_tour, port=0) as srv:
        yield srv


@pytest.fixture
def client(server: TourApiServer):
    api = TourApiClient(server.url, timeout=5)
    yield api
    api.close()


# ---------------------------------------------------------------------------
# 1. Server lifecycle
# ---------------------------------------------------------------------------

class TestServerLifecycle:

    def test_ephemeral_port_is_reported(self, server: TourApiServer):
        assert server.is_running
        assert server.port != 0
        assert server.url == f"http://127.0.0.1:{server.port}"

    def test_health(self, server: TourApiServer):
        response = requests.get(server.url + "/health", timeout=5)
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "tour": "cfg-1"}

    def test_start_twice_raises(self, server: TourApiServer):
        with pytest.raises(RuntimeError, match="already running"):
            server.start()

    def test_stop_is_idempotent(self, sample_tour: Tour):
        srv = TourApiServer(sample_tour)
        srv.start()
        srv.stop()
        srv.stop()
        assert not srv.is_running

    def test_loads_tour_file(self, tour_file: Path):
        with TourApiServer(tour_file, path_prefix="/functions/v1/") as srv:
            assert srv.url.endswith("/functions/v1")
            tour = TourApiClient(srv.url).fetch_configuration("cfg-1", "key-1")
        assert len(tour.steps) == 5


# ---------------------------------------------------------------------------
# 2. get-configuration
# ---------------------------------------------------------------------------

class TestFetchConfiguration:

    def test_returns_sorted_steps_without_secret(self, client: TourApiClient):
        tour = client.fetch_configuration("cfg-1", "key-1", "client-1")
        assert [s.id for s in tour.steps] == ["welcome", "role", "invite", "profile", "finish"]
        assert tour.configuration.api_key is None
        assert tour.progress == {}

    def test_wrong_key_is_rejected(self, client: TourApiClient):
        with pytest.raises(ConfigFetchFailed, match="401"):
            client.fetch_configuration("cfg-1", "wrong")

    def test_unknown_configuration_is_rejected(self, client: TourApiClient):
        with pytest.raises(ConfigFetchFailed, match="401"):
            client.fetch_configuration("cfg-2", "key-1")

    def test_missing_params_is_bad_request(self, server: TourApiServer):
        response = requests.get(server.url + "/get-configuration", params={"configId": "cfg-1"}, timeout=5)
        assert response.status_code == 400

    def test_unreachable_server_raises(self, sample_tour: Tour):
        srv = TourApiServer(sample_tour)
        srv.start()
        url = srv.url
        srv.stop()
        with pytest.raises(ConfigFetchFailed, match="Could not reach"):
            TourApiClient(url, timeout=2).fetch_configuration("cfg-1", "key-1")

    @pytest.mark.parametrize(
        "body",
        [
            {"configuration": {"id": "cfg-1"}, "steps": ["welcome"]},
            {"configuration": {"id": "cfg-1"}, "steps": [], "progress": ["welcome"]},
            {"configuration": {"id": "cfg-1"}, "steps": [{"id": "a", "actions": [7]}]},
        ],
    )
    def test_malformed_tour_body_is_a_fetch_failure(self, body: dict):
        response = MagicMock(status_code=200)
        response.json.return_value = body
        api = TourApiClient("http://tours.test", timeout=2)
        with patch.object(api._session, "get", return_value=response):
            with pytest.raises(ConfigFetchFailed, match="malformed"):
                api.fetch_configuration("cfg-1", "key-1")
        api.close()


# ---------------------------------------------------------------------------
# 3. save-progress / save-branch-choice
# ---------------------------------------------------------------------------

class TestProgressEndpoints:

    def test_progress_is_scoped_to_client(self, client: TourApiClient):
        client.save_progress("client-1", "cfg-1", "key-1", ProgressEntry.stamped("welcome", COMPLETED))
        mine = client.fetch_configuration("cfg-1", "key-1", "client-1")
        theirs = client.fetch_configuration("cfg-1", "key-1", "client-2")
        assert mine.progress["welcome"].status == COMPLETED
        assert mine.progress["welcome"].completed_at is not None
        assert theirs.progress == {}

    def test_save_progress_is_an_upsert(self, client: TourApiClient, server: TourApiServer):
        entry = ProgressEntry.stamped("welcome", COMPLETED)
        first = client.save_progress("client-1", "cfg-1", "key-1", entry)
        second = client.save_progress("client-1", "cfg-1", "key-1", entry)
        assert first == second
        assert first["progress"]["step_id"] == "welcome"
        assert len(server.store.progress) == 1

    def test_save_progress_wrong_key_fails(self, client: TourApiClient):
        with pytest.raises(ProgressSyncFailed, match="401"):
            client.save_progress("client-1", "cfg-1", "nope", ProgressEntry.stamped("welcome", COMPLETED))

    def test_unknown_status_is_rejected(self, server: TourApiServer):
        body = {"client_id": "c", "configuration_id": "cfg-1", "api_key": "key-1", "step_id": "a", "status": "done"}
        response = requests.post(server.url + "/save-progress", json=body, timeout=5)
        assert response.status_code == 400

    def test_branch_choice_comes_back_on_fetch(self, client: TourApiClient):
        result = client.save_branch_choice("client-1", "cfg-1", "role", "b-member")
        assert result["data"] == {"step_id": "role", "branch_id": "b-member"}
        tour = client.fetch_configuration("cfg-1", "key-1", "client-1")
        assert tour.branch_choices == {"role": "b-member"}

    def test_branch_choice_missing_fields(self, client: TourApiClient):
        with pytest.raises(ProgressSyncFailed, match="400"):
            client.save_branch_choice("client-1", "cfg-1", "role", "")


# ---------------------------------------------------------------------------
# 4. create-step
# ---------------------------------------------------------------------------

class TestCreateStep:

    def test_appends_step_with_action(self, client: TourApiClient, server: TourApiServer):
        step = client.create_step("cfg-1", "key-1", "#member-btn", "Click Member", step_type="click")
        assert step.step_order == 6
        assert step.target_selector == "#member-btn"
        assert [a.action_type for a in step.actions] == ["click"]
        assert server.store.tour.steps[-1].id == step.id

    def test_modal_step_has_no_action(self, client: TourApiClient):
        step = client.create_step("cfg-1", "key-1", "#welcome", "Intro", step_type="modal")
        assert step.target_type == "modal"
        assert step.actions == []

    def test_wrong_key_is_rejected(self, client: TourApiClient):
        with pytest.raises(ProgressSyncFailed, match="401"):
            client.create_step("cfg-1", "bad", "#welcome", "Intro")

    def test_unknown_configuration_is_not_found(self, client: TourApiClient):
        with pytest.raises(ProgressSyncFailed, match="404"):
            client.create_step("cfg-9", "key-1", "#welcome", "Intro")


# ---------------------------------------------------------------------------
# 5. Routing details
# ---------------------------------------------------------------------------

class TestRouting:

    def test_unknown_path_is_404(self, server: TourApiServer):
        assert requests.post(server.url + "/nope", json={}, timeout=5).status_code == 404

    def test_get_on_post_endpoint_is_405(self, server: TourApiServer):
        assert requests.get(server.url + "/save-progress", timeout=5).status_code == 405

    def test_non_object_body_is_400(self, server: TourApiServer):
        response = requests.post(server.url + "/save-progress", data="[1, 2]", timeout=5)
        assert response.status_code == 400

    def test_preflight_allows_cors(self, server: TourApiServer):
        response = requests.options(server.url + "/save-progress", timeout=5)
        assert response.status_code == 204
        assert response.headers["Access-Control-Allow-Origin"] == "*"
