"""Local gateway that hosts the cache worker in front of the app origin.

Crew devices talk to the gateway instead of the origin. Every request
becomes a FetchEvent; requests the worker does not intercept are forwarded
to the network untouched. Targets outside the app origin are refused.
Worker controls live under /__sw/:

    GET  /__sw/status                        version, lifecycle state, bucket sizes
    POST /__sw/message                       post a message (e.g. SKIP_WAITING)
    POST /__sw/push                          deliver a push message
    GET  /__sw/notifications                 notifications on screen
    POST /__sw/notifications/<id>/click      click a notification
    GET  /__sw/clients                       open windows
    POST /__sw/clients                       register an open window {"url": ...}
"""

import json
import logging
import re
from http.server import BaseHTTPRequestHandler
from typing import Any

from .api import BackgroundHTTPServer
from .buckets import CacheStorageError
from .config import GatewayConfig
from .models import Request, Response, same_origin
from .network import HOP_BY_HOP_HEADERS, NetworkError
from .notifications import Notification, WindowClient
from .strategies import Fetcher
from .worker import ACTIVATED, FetchEvent, MessageEvent, NotificationClickEvent, PushEvent, ServiceWorker

logger = logging.getLogger(__name__)

CONTROL_PREFIX = "/__sw/"

# Largest request body forwarded or accepted by the controls.
MAX_BODY = 32 * 1024 * 1024

_CLICK_PATH = re.compile(r"^/__sw/notifications/(\d+)/click$")


def _notification_to_dict(notification: Notification) -> dict:
    return {
        "id": notification.id,
        "title": notification.title,
        "body": notification.body,
        "icon": notification.icon,
        "badge": notification.badge,
        "data": notification.data,
        "tag": notification.tag,
        "shownAt": notification.shown_at.isoformat(),
    }


def _client_to_dict(client: WindowClient) -> dict:
    return {"id": client.id, "url": client.url, "controlled": client.controlled, "focused": client.focused}


class GatewayHandler(BaseHTTPRequestHandler):
    """Turns incoming HTTP requests into worker events."""

    worker: ServiceWorker | None = None
    fetcher: Fetcher | None = None

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("Gateway %s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: Any) -> None:
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        self._send_json(code, {"error": message})

    def _send_response(self, response: Response) -> None:
        self.send_response(response.status or 502, response.status_text or None)
        for name, value in response.headers.items():
            if name.lower() in HOP_BY_HOP_HEADERS or name.lower() == "content-length":
                continue
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(response.body)

    def _read_body(self) -> bytes | None:
        length = int(self.headers.get("Content-Length") or 0)
        if length > MAX_BODY:
            raise ValueError("request body too large")
        return self.rfile.read(length) if length > 0 else None

    def _build_request(self, body: bytes | None) -> Request:
        if self.path.startswith(("http://", "https://")):
            url = self.path
        else:
            url = self.worker.config.origin + self.path

        destination = self.headers.get("Sec-Fetch-Dest", "")
        return Request(
            url=url,
            method=self.command,
            headers={name: value for name, value in self.headers.items()},
            mode=self.headers.get("Sec-Fetch-Mode", "no-cors"),
            destination="" if destination == "empty" else destination,
            body=body,
        )

    def _handle(self) -> None:
        try:
            body = self._read_body()
        except ValueError as e:
            self._send_error_json(413 if "large" in str(e) else 400, str(e))
            return

        try:
            if self.path.startswith(CONTROL_PREFIX):
                self._handle_control(body)
            else:
                self._handle_fetch(body)
        except Exception as e:
            logger.exception("Gateway error handling %s %s: %s", self.command, self.path, e)
            self._send_error_json(500, "Internal server error")

    do_GET = _handle
    do_HEAD = _handle
    do_POST = _handle
    do_PUT = _handle
    do_PATCH = _handle
    do_DELETE = _handle
    do_OPTIONS = _handle

    def _handle_fetch(self, body: bytes | None) -> None:
        request = self._build_request(body)
        if not same_origin(request.url, self.worker.config.origin):
            logger.warning("Refusing to forward %s %s: not %s", self.command, self.path, self.worker.config.origin)
            self._send_error_json(403, "Only the app origin is served")
            return
        try:
            response = self.worker.dispatch(FetchEvent(request))
            if response is None:
                response = self.fetcher.fetch(request)
        except NetworkError as e:
            logger.warning("Upstream unreachable for %s: %s", request.url, e)
            self._send_error_json(502, "Bad Gateway")
            return
        self._send_response(response)

    # Controls

    def _handle_control(self, body: bytes | None) -> None:
        path = self.path.split("?", 1)[0]
        method = self.command

        if path == "/__sw/status" and method == "GET":
            self._send_json(200, self._status())
        elif path == "/__sw/message" and method == "POST":
            self.worker.dispatch(MessageEvent(self._decode_message(body)))
            self._send_json(200, {"ok": True, "state": self.worker.state})
        elif path == "/__sw/push" and method == "POST":
            notification = self.worker.dispatch(PushEvent(body))
            self._send_json(201, _notification_to_dict(notification))
        elif path == "/__sw/notifications" and method == "GET":
            self._send_json(200, [_notification_to_dict(n) for n in self.worker.notifications.list()])
        elif path == "/__sw/clients" and method == "GET":
            clients = self.worker.clients.match_all(include_uncontrolled=True)
            self._send_json(200, [_client_to_dict(c) for c in clients])
        elif path == "/__sw/clients" and method == "POST":
            self._register_client(body)
        elif _CLICK_PATH.match(path) and method == "POST":
            notification_id = int(_CLICK_PATH.match(path).group(1))
            if self.worker.notifications.get(notification_id) is None:
                self._send_error_json(404, f"Notification {notification_id} not found")
                return
            client = self.worker.dispatch(NotificationClickEvent(notification_id))
            self._send_json(200, {"client": _client_to_dict(client) if client else None})
        else:
            self._send_error_json(404, "Not found")

    def _decode_message(self, body: bytes | None) -> object:
        if not body:
            return None
        try:
            return json.loads(body)
        except ValueError:
            return body.decode("utf-8", errors="replace").strip()

    def _register_client(self, body: bytes | None) -> None:
        try:
            data = json.loads(body or b"{}")
        except ValueError:
            data = None
        if not isinstance(data, dict) or not data.get("url"):
            self._send_error_json(400, "url is required")
            return
        controlled = self.worker.state == ACTIVATED
        client = self.worker.clients.register(str(data["url"]), controlled=controlled)
        self._send_json(201, _client_to_dict(client))

    def _status(self) -> dict:
        buckets = {}
        for name in self.worker.bucket_names:
            try:
                if self.worker.storage.has(name):
                    buckets[name] = len(self.worker.storage.open(name).keys())
            except CacheStorageError as e:
                logger.warning("Cannot read bucket %s: %s", name, e)
        return {"version": self.worker.version, "state": self.worker.state, "buckets": buckets}


def _create_handler_class(worker: ServiceWorker, fetcher: Fetcher) -> type:
    """Create a handler class with the worker and fetcher bound."""

    class BoundGatewayHandler(GatewayHandler):
        pass

    BoundGatewayHandler.worker = worker
    BoundGatewayHandler.fetcher = fetcher
    return BoundGatewayHandler


class GatewayServer(BackgroundHTTPServer):
    """Threaded HTTP server hosting the cache worker."""

    name = "gateway"

    def __init__(self, config: GatewayConfig, worker: ServiceWorker, fetcher: Fetcher) -> None:
        super().__init__(config.port, host=config.bind_host)
        self.config = config
        self.worker = worker
        self._handler = _create_handler_class(worker, fetcher)

    def _handler_class(self) -> type:
        return self._handler
