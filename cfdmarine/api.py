"""HTTP app server: the app shell, the web app manifest and the JSON functions."""

import json
import logging
import mimetypes
import sqlite3
import threading
from datetime import UTC, datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlsplit

import requests

from .config import ApiConfig, PushConfig
from .database import DatabaseError, delete_gar, get_gars_by_boat, insert_gar, update_gar
from .gar import GarValidationError, record_from_submission, update_fields
from .marine import MarineConditions, UpstreamError
from .network import DEFAULT_USER_AGENT
from .pwa import manifest_json
from .push import PushBroadcaster, PushError, admin_test_payload, new_issue_payload
from .resources import ResourceError, ResourceNotFoundError, ResourceStore
from .security import check_admin_key, is_allowed_proxy_target

logger = logging.getLogger(__name__)

# Largest JSON request body accepted by the functions.
MAX_JSON_BODY = 1024 * 1024

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, X-Admin-Key, X-File-Name, X-File-Title",
}


class ApiError(Exception):
    """Raised when an API operation fails."""

    pass


class _BadRequest(Exception):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


class AppHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the app shell and the /api/ functions."""

    # Class-level references set by factory
    config: ApiConfig | None = None
    push_config: PushConfig | None = None
    db_conn: sqlite3.Connection | None = None
    marine: MarineConditions | None = None
    resources: ResourceStore | None = None
    broadcaster: PushBroadcaster | None = None
    app_version: str = ""
    api_prefix: str = "/api/"

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("App %s - %s", self.address_string(), format % args)

    # Responses

    def _send_body(self, code: int, body: bytes, content_type: str, headers: dict[str, str] | None = None) -> None:
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _send_json(self, code: int, data: Any) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        headers = {"Cache-Control": "no-store", **CORS_HEADERS}
        self._send_body(code, body, "application/json; charset=utf-8", headers)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"ok": False, "error": message})

    def _send_text(self, code: int, text: str) -> None:
        headers = {"Cache-Control": "no-store", **CORS_HEADERS}
        self._send_body(code, text.encode("utf-8"), "text/plain; charset=utf-8", headers)

    # Request helpers

    def _split_path(self) -> tuple[str, dict[str, str]]:
        parts = urlsplit(self.path)
        query = {key: values[0] for key, values in parse_qs(parts.query).items()}
        return parts.path, query

    def _read_body(self, limit: int) -> bytes:
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            raise _BadRequest(400, "invalid Content-Length")
        if length < 0:
            raise _BadRequest(400, "invalid Content-Length")
        if length > limit:
            raise _BadRequest(413, "request body too large")
        return self.rfile.read(length) if length else b""

    def _read_json(self) -> dict:
        """Parse the request body as a JSON object; anything else reads as {}."""
        raw = self._read_body(MAX_JSON_BODY)
        try:
            data = json.loads(raw or b"{}")
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _is_admin(self) -> bool:
        return check_admin_key(self.headers.get("X-Admin-Key"), self.config.admin_key if self.config else None)

    def _function_name(self, path: str) -> str | None:
        if path.startswith(self.api_prefix):
            return path[len(self.api_prefix):].strip("/")
        return None

    # Dispatch

    def _dispatch(self, routes: dict[str, Any]) -> None:
        path, query = self._split_path()
        name = self._function_name(path)
        try:
            if name is None:
                if self.command in ("GET", "HEAD"):
                    self._handle_static(path)
                else:
                    self._send_error_json(405, "method_not_allowed")
                return
            handler = routes.get(name)
            if handler is None:
                self._send_error_json(404, "Not found")
                return
            handler(query)
        except _BadRequest as e:
            self._send_error_json(e.status, str(e))
        except DatabaseError as e:
            logger.error("Database error in %s: %s", path, e)
            self._send_error_json(500, "Database error")
        except Exception as e:
            logger.exception("Error handling %s %s: %s", self.command, path, e)
            self._send_error_json(500, "Internal server error")

    def do_GET(self) -> None:
        """Handle GET requests."""
        self._dispatch(
            {
                "ping": self._handle_ping,
                "marine": self._handle_marine,
                "ndbc": self._handle_ndbc,
                "waves-ndbc": self._handle_waves_ndbc,
                "erddap-waves": self._handle_erddap_waves,
                "conditions": self._handle_conditions,
                "proxy": self._handle_proxy,
                "gar": self._handle_gar_list,
                "resources": self._handle_resources,
                "file": self._handle_file,
                "push-config": self._handle_push_config,
            }
        )

    def do_HEAD(self) -> None:
        self.do_GET()

    def do_POST(self) -> None:
        """Handle POST requests."""
        self._dispatch(
            {
                "gar": self._handle_gar_post,
                "upload-resource": self._handle_upload,
                "push": self._handle_push,
            }
        )

    def do_DELETE(self) -> None:
        """Handle DELETE requests."""
        self._dispatch({"upload-resource": self._handle_resource_delete})

    def do_OPTIONS(self) -> None:
        """CORS preflight."""
        self._send_body(204, b"", "text/plain", CORS_HEADERS)

    # App shell

    def _handle_static(self, path: str) -> None:
        root = Path(self.config.web_root).resolve()

        if path == "/manifest.json" and not (root / "manifest.json").is_file():
            self._send_body(
                200,
                manifest_json(self.app_version).encode("utf-8"),
                "application/manifest+json",
                {"Cache-Control": "no-cache"},
            )
            return

        relative = path.lstrip("/")
        target = (root / relative).resolve()
        if not target.is_relative_to(root):
            logger.warning("Path traversal attempt: %s", path)
            self._send_error_json(403, "Forbidden")
            return
        if target.is_dir():
            target = target / "index.html"
        if not target.is_file():
            self._send_error_json(404, "Not found")
            return

        content_type = mimetypes.guess_type(target.name)[0] or "application/octet-stream"
        if content_type.startswith("text/") or content_type in ("application/javascript", "application/json"):
            content_type += "; charset=utf-8"
        cache_control = "no-cache" if target.suffix == ".html" else "max-age=3600"
        self._send_body(200, target.read_bytes(), content_type, {"Cache-Control": cache_control})

    # Marine functions

    def _handle_ping(self, query: dict[str, str]) -> None:
        self._send_json(200, {"ok": True, "ts": datetime.now(UTC).isoformat()})

    def _handle_marine(self, query: dict[str, str]) -> None:
        try:
            self._send_json(200, self.marine.marine_summary())
        except UpstreamError as e:
            logger.error("Marine summary failed: %s", e)
            self._send_json(500, {"error": str(e)})

    def _handle_ndbc(self, query: dict[str, str]) -> None:
        station = query.get("station")
        try:
            self._send_json(200, self.marine.station_waves(station))
        except UpstreamError as e:
            self._send_json(502, {"error": "Fetch failed (timeout/network)", "details": str(e)})

    def _handle_waves_ndbc(self, query: dict[str, str]) -> None:
        self._send_json(200, self.marine.waves_with_fallback())

    def _handle_erddap_waves(self, query: dict[str, str]) -> None:
        self._send_json(200, self.marine.erddap_waves())

    def _handle_conditions(self, query: dict[str, str]) -> None:
        self._send_json(200, self.marine.live_conditions())

    def _handle_proxy(self, query: dict[str, str]) -> None:
        url = query.get("u", "").strip()
        kind = query.get("type", "json").strip()
        if not url:
            self._send_text(400, "Missing ?u=")
            return
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            self._send_text(400, "Invalid URL")
            return
        if not is_allowed_proxy_target(url, self.config.proxy_allowed_hosts):
            self._send_text(403, f"Host not allowed: {parts.hostname}")
            return

        try:
            upstream = requests.get(url, headers={"User-Agent": DEFAULT_USER_AGENT}, timeout=15)
        except requests.RequestException as e:
            self._send_text(502, f"Proxy error: {e}")
            return
        if not upstream.ok:
            self._send_text(upstream.status_code, f"Upstream {upstream.status_code}")
            return

        headers = {"Cache-Control": "no-cache", "Access-Control-Allow-Origin": "*"}
        if kind == "text":
            self._send_body(200, upstream.text.encode("utf-8"), "text/plain; charset=utf-8", headers)
            return
        try:
            data = upstream.json()
        except ValueError:
            self._send_text(502, "Proxy error: upstream did not return JSON")
            return
        self._send_body(200, json.dumps(data).encode("utf-8"), "application/json; charset=utf-8", headers)

    # GAR

    def _handle_gar_list(self, query: dict[str, str]) -> None:
        boat = query.get("boat", "").strip()
        if not boat:
            self._send_error_json(400, "missing boat")
            return
        records = get_gars_by_boat(self.db_conn, boat)
        self._send_json(200, {"ok": True, "items": [r.to_dict() for r in records], "meta": {"count": len(records)}})

    def _handle_gar_post(self, query: dict[str, str]) -> None:
        body = self._read_json()
        action = str(body.get("action") or "").lower()

        if action in ("", "create"):
            try:
                record = record_from_submission(body)
            except GarValidationError as e:
                self._send_error_json(400, str(e))
                return
            insert_gar(self.db_conn, record)
            logger.info("GAR %s saved for %s", record.id, record.boat)
            self._send_json(200, {"ok": True, "saved": True, "id": record.id})
            return

        if action in ("update", "delete"):
            if not self._is_admin():
                self._send_error_json(401, "unauthorized")
                return
            gar_id = str(body.get("id") or "").strip()
            if not gar_id:
                self._send_error_json(400, "missing id")
                return
            if action == "update":
                found = update_gar(self.db_conn, gar_id, update_fields(body))
                result_key = "updated"
            else:
                found = delete_gar(self.db_conn, gar_id)
                result_key = "deleted"
            if not found:
                self._send_error_json(404, "not found")
                return
            self._send_json(200, {"ok": True, result_key: True, "id": gar_id})
            return

        self._send_error_json(400, "unknown_action_or_method")

    # Resources

    def _handle_resources(self, query: dict[str, str]) -> None:
        try:
            self._send_json(200, self.resources.list())
        except ResourceError as e:
            logger.error("Resource list failed: %s", e)
            self._send_json(500, {"error": str(e)})

    def _handle_file(self, query: dict[str, str]) -> None:
        name = query.get("name")
        if not name:
            self._send_text(400, "File not specified")
            return
        try:
            content, mime_type = self.resources.get(name)
        except ResourceNotFoundError:
            self._send_text(404, "File not found")
            return
        except ResourceError as e:
            self._send_text(400, str(e))
            return
        self._send_body(
            200,
            content,
            mime_type,
            {"Content-Disposition": "inline", "X-Content-Type-Options": "nosniff"},
        )

    def _handle_upload(self, query: dict[str, str]) -> None:
        data = self._read_body(self.resources_limit)
        try:
            entry = self.resources.upload(
                self.headers.get("X-File-Name"),
                data,
                title=self.headers.get("X-File-Title"),
            )
        except ResourceError as e:
            self._send_json(400, {"success": False, "error": str(e)})
            return
        self._send_json(200, {"success": True, "resource": entry})

    def _handle_resource_delete(self, query: dict[str, str]) -> None:
        if not self._is_admin():
            self._send_error_json(401, "unauthorized")
            return
        try:
            deleted = self.resources.delete(query.get("name"))
        except ResourceError as e:
            self._send_json(400, {"success": False, "error": str(e)})
            return
        self._send_json(200, {"success": True, "deleted": deleted})

    @property
    def resources_limit(self) -> int:
        return self.resources.max_upload_bytes

    # Push

    def _handle_push_config(self, query: dict[str, str]) -> None:
        public_key = self.push_config.public_key if self.push_config else None
        if not public_key:
            self._send_error_json(500, "missing_env: VAPID_PUBLIC_KEY")
            return
        self._send_json(200, {"ok": True, "publicKey": public_key})

    def _handle_push(self, query: dict[str, str]) -> None:
        body = self._read_json()
        action = str(body.get("action") or "").lower()

        if action in ("subscribe", "unsubscribe", "test") and not self._is_admin():
            self._send_error_json(401, "unauthorized")
            return

        if action == "subscribe":
            try:
                self.broadcaster.subscribe(body.get("subscription"))
            except PushError as e:
                self._send_error_json(400, str(e))
                return
            self._send_json(200, {"ok": True})
        elif action == "unsubscribe":
            removed = self.broadcaster.unsubscribe(body.get("endpoint"))
            self._send_json(200, {"ok": True, "removed": removed})
        elif action == "test":
            result = self.broadcaster.broadcast(admin_test_payload())
            self._send_json(200, {"ok": True, **result.to_dict()})
        elif action == "broadcastnew":
            boat = str(body.get("boat") or "").strip()
            if not boat:
                self._send_error_json(400, "missing boat")
                return
            payload = new_issue_payload(boat, str(body.get("description") or ""), body.get("severity"))
            result = self.broadcaster.broadcast(payload)
            self._send_json(200, {"ok": True, **result.to_dict()})
        else:
            self._send_error_json(400, "unknown_action")


def _create_handler_class(
    config: ApiConfig,
    push_config: PushConfig,
    db_conn: sqlite3.Connection,
    marine: MarineConditions,
    resources: ResourceStore,
    broadcaster: PushBroadcaster,
    app_version: str,
    api_prefix: str,
) -> type:
    """Create a handler class with the collaborators bound."""

    class BoundAppHandler(AppHandler):
        pass

    BoundAppHandler.config = config
    BoundAppHandler.push_config = push_config
    BoundAppHandler.db_conn = db_conn
    BoundAppHandler.marine = marine
    BoundAppHandler.resources = resources
    BoundAppHandler.broadcaster = broadcaster
    BoundAppHandler.app_version = app_version
    BoundAppHandler.api_prefix = api_prefix
    return BoundAppHandler


def _bind_error(name: str, port: int, e: OSError) -> ApiError:
    if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
        return ApiError(
            f"Port {port} is already in use. "
            f"Another process may be using this port, or cfdmarine is already running."
        )
    if e.errno == 13:  # EACCES - Permission denied
        return ApiError(
            f"Permission denied for port {port}. "
            f"Ports below 1024 require root privileges. "
            f"Use a port >= 1024 or run with elevated permissions."
        )
    return ApiError(f"Failed to start {name} on port {port}: {e}")


class BackgroundHTTPServer:
    """Runs a threaded HTTP server in a background thread with clean shutdown."""

    name = "server"

    def __init__(self, port: int, host: str = "") -> None:
        self.port = port
        self.host = host
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

    def _handler_class(self) -> type:
        raise NotImplementedError

    def start(self) -> None:
        """Start the server in a background thread.

        Raises:
            ApiError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("%s is already running", self.name)
            return

        try:
            self._server = ThreadingHTTPServer((self.host, self.port), self._handler_class())
        except OSError as e:
            raise _bind_error(self.name, self.port, e)
        self._server.daemon_threads = True
        self._server.timeout = 1.0  # Allow periodic shutdown checks

        self._shutdown_event.clear()
        self._thread = threading.Thread(
            target=self._serve_forever,
            name=self.name.replace(" ", "-"),
            daemon=True,
        )
        self._thread.start()

        logger.info("%s started on port %d", self.name, self.port)

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping %s...", self.name)
        self._shutdown_event.set()

        if self._server:
            self._server.server_close()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self._server = None
        self._thread = None
        logger.info("%s stopped", self.name)

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()


class AppServer(BackgroundHTTPServer):
    """Threaded HTTP server for the app shell and JSON functions."""

    name = "app server"

    def __init__(
        self,
        config: ApiConfig,
        push_config: PushConfig,
        db_conn: sqlite3.Connection,
        marine: MarineConditions,
        resources: ResourceStore,
        broadcaster: PushBroadcaster,
        app_version: str,
        api_prefix: str = "/api/",
    ) -> None:
        """Initialize the app server.

        Args:
            config: API configuration.
            push_config: Push configuration (public key).
            db_conn: Database connection for GAR records.
            marine: Upstream marine data lookups.
            resources: Uploaded resources store.
            broadcaster: Push subscription manager.
            app_version: Version reported in the manifest.
            api_prefix: Path prefix of the JSON functions.
        """
        super().__init__(config.port)
        self.config = config
        self._handler = _create_handler_class(
            config, push_config, db_conn, marine, resources, broadcaster, app_version, api_prefix
        )

    def _handler_class(self) -> type:
        return self._handler
