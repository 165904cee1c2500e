"""AutoSetup Stub API — local tour API server backed by a tour file.

Serves one tour (YAML or JSON, the ``get-configuration`` response shape plus
``configuration.api_key``) over the same endpoints the widget talks to in
production, keeping progress and branch choices in memory:

``GET  /get-configuration``   configuration, sorted steps, client progress
``POST /save-progress``       upsert keyed by (client, configuration, step)
``POST /save-branch-choice``  upsert keyed by (client, configuration, step)
``POST /create-step``         append a captured step (``x-api-key`` header)
``GET  /health``              liveness check

Usage::

    with TourApiServer(Path("tours/onboarding.yaml"), port=0) as server:
        client = TourApiClient(server.url)
        tour = client.fetch_configuration("cfg-1", "key-1", "client-1")
"""

from __future__ import annotations

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlsplit

from autosetup.capture.bridge import step_from_capture
from autosetup.engine.tour import PROGRESS_STATUSES, Tour
from autosetup.models import (
    CREATE_STEP_PATH,
    GET_CONFIGURATION_PATH,
    HEALTH_PATH,
    SAVE_BRANCH_CHOICE_PATH,
    SAVE_PROGRESS_PATH,
)

logger = logging.getLogger("autosetup.server.stub_api")

_Key = tuple[str, str, str]  # (client_id, configuration_id, step_id)


class TourStore:
    """In-memory rows behind the stub endpoints."""

    def __init__(self, tour: Tour) -> None:
        self.tour = tour
        self.progress: dict[_Key, dict[str, Any]] = {}
        self.choices: dict[_Key, str] = {}
        self.lock = threading.Lock()

    def authorized(self, config_id: str, api_key: str) -> bool:
        config = self.tour.configuration
        return bool(config.api_key) and config.id == config_id and config.api_key == api_key

    def configuration_response(self, client_id: str | None) -> dict[str, Any]:
        data = self.tour.to_dict()
        config_id = self.tour.configuration.id
        progress: dict[str, Any] = {}
        choices: dict[str, str] = {}
        if client_id:
            with self.lock:
                for (cid, cfg, step_id), row in self.progress.items():
                    if cid == client_id and cfg == config_id:
                        progress[step_id] = dict(row)
                for (cid, cfg, step_id), branch_id in self.choices.items():
                    if cid == client_id and cfg == config_id:
                        choices[step_id] = branch_id
        data["progress"] = progress
        data["branchChoices"] = choices
        return data


class StubRequestHandler(BaseHTTPRequestHandler):
    """Routes requests to the stub endpoints."""

    # Set by TourApiServer before the HTTPServer is started
    store: TourStore
    path_prefix: str

    def do_GET(self) -> None:
        self._handle_request("GET")

    def do_POST(self) -> None:
        self._handle_request("POST")

    def do_PUT(self) -> None:
        self._handle_request("PUT")

    def do_DELETE(self) -> None:
        self._handle_request("DELETE")

    def do_OPTIONS(self) -> None:
        self.send_response(204)
        self._cors_headers()
        self.end_headers()

    # Suppress default stderr logging -- we route through Python logging
    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("stub_http: %s", format % args)

    # -----------------------------------------------------------------------
    # Core dispatch
    # -----------------------------------------------------------------------

    def _handle_request(self, method: str) -> None:
        parts = urlsplit(self.path)
        path = parts.path
        prefix = self.__class__.path_prefix
        if prefix and path.startswith(prefix):
            path = path[len(prefix):] or "/"

        if path == HEALTH_PATH:
            self._send_json(200, {"status": "ok", "tour": self.__class__.store.tour.configuration.id})
            return
        if path == GET_CONFIGURATION_PATH:
            self._get_configuration(parse_qs(parts.query))
            return

        handlers = {
            SAVE_PROGRESS_PATH: self._save_progress,
            SAVE_BRANCH_CHOICE_PATH: self._save_branch_choice,
            CREATE_STEP_PATH: self._create_step,
        }
        handler = handlers.get(path)
        if handler is None:
            self._send_json(404, {"error": f"No endpoint for {method} {parts.path}"})
            return
        if method != "POST":
            self._send_json(405, {"error": "Method not allowed"})
            return

        body = self._read_json()
        if body is None:
            self._send_json(400, {"error": "Request body must be a JSON object"})
            return
        handler(body)

    # -----------------------------------------------------------------------
    # Endpoints
    # -----------------------------------------------------------------------

    def _get_configuration(self, query: dict[str, list[str]]) -> None:
        config_id = (query.get("configId") or [""])[0]
        api_key = (query.get("apiKey") or [""])[0]
        client_id = (query.get("clientId") or [""])[0] or None
        if not config_id or not api_key:
            self._send_json(400, {"error": "configId and apiKey are required"})
            return

        store = self.__class__.store
        if not store.authorized(config_id, api_key):
            logger.warning("get-configuration rejected for configuration %s", config_id)
            self._send_json(401, {"error": "Invalid configuration or API key"})
            return

        response = store.configuration_response(client_id)
        logger.info(
            "Served configuration %s (%d steps, %d progress entries)",
            config_id, len(response["steps"]), len(response["progress"]),
        )
        self._send_json(200, response, extra_headers={"Cache-Control": "no-store"})

    def _save_progress(self, body: dict[str, Any]) -> None:
        client_id = body.get("client_id")
        config_id = body.get("configuration_id")
        api_key = body.get("api_key")
        if not client_id or not config_id or not api_key:
            self._send_json(400, {"error": "client_id, configuration_id, and api_key are required"})
            return

        store = self.__class__.store
        if not store.authorized(str(config_id), str(api_key)):
            self._send_json(401, {"error": "Invalid configuration or API key"})
            return

        status = body.get("status") or "pending"
        if status not in PROGRESS_STATUSES:
            self._send_json(400, {"error": f"Unknown status: {status}"})
            return

        row: dict[str, Any] = {"status": status}
        for stamp in ("completed_at", "skipped_at"):
            if body.get(stamp):
                row[stamp] = body[stamp]
        key = (str(client_id), str(config_id), str(body.get("step_id") or ""))
        with store.lock:
            store.progress[key] = row

        logger.info("Progress saved: client=%s step=%s status=%s", client_id, key[2], status)
        self._send_json(200, {"success": True, "progress": {"step_id": key[2], **row}})

    def _save_branch_choice(self, body: dict[str, Any]) -> None:
        fields = [body.get(k) for k in ("clientId", "configurationId", "stepId", "branchId")]
        if not all(fields):
            self._send_json(400, {"error": "clientId, configurationId, stepId and branchId are required"})
            return

        client_id, config_id, step_id, branch_id = (str(f) for f in fields)
        store = self.__class__.store
        with store.lock:
            store.choices[(client_id, config_id, step_id)] = branch_id

        logger.info("Branch choice saved: client=%s step=%s -> %s", client_id, step_id, branch_id)
        self._send_json(200, {"success": True, "data": {"step_id": step_id, "branch_id": branch_id}})

    def _create_step(self, body: dict[str, Any]) -> None:
        api_key = self.headers.get("x-api-key")
        if not api_key:
            self._send_json(401, {"error": "API key is required"})
            return

        config_id = body.get("configuration_id")
        selector = body.get("selector")
        title = body.get("title")
        if not config_id or not selector or not title:
            self._send_json(400, {"error": "configuration_id, selector, and title are required"})
            return

        store = self.__class__.store
        if store.tour.configuration.id != config_id:
            self._send_json(404, {"error": "Configuration not found"})
            return
        if store.tour.configuration.api_key != api_key:
            self._send_json(401, {"error": "Invalid API key"})
            return

        step = step_from_capture(
            str(selector),
            step_type=str(body.get("step_type") or "highlight"),
            title=str(title),
            description=body.get("description"),
            position=str(body.get("position") or "auto"),
        )
        with store.lock:
            store.tour.append_step(step)

        logger.info("Step created: %s (order %d)", step.id, step.step_order)
        self._send_json(201, {"success": True, "step": step.to_dict(), "step_number": step.step_order})

    # -----------------------------------------------------------------------
    # Request / response helpers
    # -----------------------------------------------------------------------

    def _read_json(self) -> dict[str, Any] | None:
        content_length = int(self.headers.get("Content-Length", 0))
        body_bytes = self.rfile.read(content_length) if content_length > 0 else b""
        try:
            body = json.loads(body_bytes.decode("utf-8") or "{}")
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    def _cors_headers(self) -> None:
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Headers", "authorization, content-type, x-api-key")

    def _send_json(self, status: int, body: Any, extra_headers: dict[str, str] | None = None) -> None:
        payload = json.dumps(body, default=str).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self._cors_headers()
        for name, value in (extra_headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(payload)


# ---------------------------------------------------------------------------
# TourApiServer -- public API
# ---------------------------------------------------------------------------

class TourApiServer:
    """Manages the lifecycle of a stub tour API in a background thread.

    ``port=0`` binds an ephemeral port; :attr:`url` reports the real one.
    """

    def __init__(
        self,
        tour: Tour | Path,
        host: str = "127.0.0.1",
        port: int = 0,
        path_prefix: str = "",
    ) -> None:
        self._store = TourStore(tour if isinstance(tour, Tour) else Tour.from_file(Path(tour)))
        self._host = host
        self._port = port
        self._path_prefix = path_prefix.rstrip("/")
        self._httpd: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def store(self) -> TourStore:
        return self._store

    @property
    def port(self) -> int:
        if self._httpd is not None:
            return self._httpd.server_address[1]
        return self._port

    @property
    def url(self) -> str:
        """Base URL to hand to :class:`TourApiClient`."""
        return f"http://{self._host}:{self.port}{self._path_prefix}"

    @property
    def is_running(self) -> bool:
        return self._httpd is not None

    def start(self) -> None:
        """Start serving in a daemon thread.

        Raises:
            RuntimeError: If the server is already running.
            OSError: If the port is already in use.
        """
        if self._httpd is not None:
            raise RuntimeError(f"TourApiServer already running at {self.url}")

        handler_class = type(
            "BoundStubHandler",
            (StubRequestHandler,),
            {"store": self._store, "path_prefix": self._path_prefix},
        )
        self._httpd = ThreadingHTTPServer((self._host, self._port), handler_class)
        self._thread = threading.Thread(
            target=self._httpd.serve_forever,
            name=f"tour-api-{self._store.tour.configuration.id}",
            daemon=True,
        )
        self._thread.start()
        logger.info("TourApiServer started: %s at %s", self._store.tour.configuration.id, self.url)

    def stop(self) -> None:
        """Shut down and join the thread.  Safe to call more than once."""
        if self._httpd is None:
            return
        self._httpd.shutdown()
        self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            if self._thread.is_alive():
                logger.warning("TourApiServer thread did not exit cleanly within 5s")
        self._httpd = None
        self._thread = None
        logger.info("TourApiServer stopped")

    def __enter__(self) -> TourApiServer:
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.stop()
