"""Push message handling and notification click routing.

The host collaborators (shown notifications, open windows) are modeled by
NotificationCenter and ClientRegistry so the gateway can expose them and
tests can inspect them.
"""

import itertools
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from urllib.parse import urljoin, urlparse

from .models import PushPayload, same_origin

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New maintenance issue"
DEFAULT_URL = "/pages/maintenance.html"

# Upper bound on tracked open windows.
MAX_WINDOWS = 32


@dataclass(frozen=True)
class Notification:
    """An OS-level notification shown by the worker."""

    id: int
    title: str
    body: str = ""
    icon: str | None = None
    badge: str | None = None
    data: dict = field(default_factory=dict)
    tag: str | None = None
    shown_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class NotificationCenter:
    """Thread-safe record of the notifications currently on screen."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._notifications: dict[int, Notification] = {}

    def show(
        self,
        title: str,
        body: str = "",
        icon: str | None = None,
        badge: str | None = None,
        data: dict | None = None,
        tag: str | None = None,
    ) -> Notification:
        """Display a notification. A tag replaces any open notification with the same tag."""
        with self._lock:
            if tag is not None:
                for existing in list(self._notifications.values()):
                    if existing.tag == tag:
                        del self._notifications[existing.id]
            notification = Notification(
                id=next(self._ids),
                title=title,
                body=body,
                icon=icon,
                badge=badge,
                data=dict(data or {}),
                tag=tag,
            )
            self._notifications[notification.id] = notification
        logger.info("Notification shown: %s", title)
        return notification

    def get(self, notification_id: int) -> Notification | None:
        with self._lock:
            return self._notifications.get(notification_id)

    def close(self, notification_id: int) -> bool:
        """Dismiss a notification. Returns False if it is not on screen."""
        with self._lock:
            return self._notifications.pop(notification_id, None) is not None

    def list(self) -> list[Notification]:
        """Notifications on screen, oldest first."""
        with self._lock:
            return list(self._notifications.values())


@dataclass
class WindowClient:
    """An open app window (browser tab) known to the worker."""

    id: int
    url: str
    controlled: bool = False
    focused: bool = False


class ClientRegistry:
    """Open windows of one origin, and which of them the worker controls.

    At most max_windows are tracked; adding one more forgets the oldest
    window that is not focused.
    """

    def __init__(self, origin: str, max_windows: int = MAX_WINDOWS) -> None:
        self._origin = origin
        self._max_windows = max_windows
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._clients: dict[int, WindowClient] = {}

    def register(self, url: str, controlled: bool = False) -> WindowClient:
        """Record a window that the page opened on its own."""
        with self._lock:
            client = WindowClient(id=next(self._ids), url=url, controlled=controlled)
            self._add(client)
        return client

    def _add(self, client: WindowClient) -> None:
        # Caller holds the lock.
        while len(self._clients) >= self._max_windows:
            oldest = next((c for c in self._clients.values() if not c.focused), None)
            if oldest is None:
                oldest = next(iter(self._clients.values()))
            del self._clients[oldest.id]
            logger.debug("Forgot window %d at %s", oldest.id, oldest.url)
        self._clients[client.id] = client

    def get(self, client_id: int) -> WindowClient | None:
        with self._lock:
            return self._clients.get(client_id)

    def remove(self, client_id: int) -> bool:
        with self._lock:
            return self._clients.pop(client_id, None) is not None

    def match_all(self, include_uncontrolled: bool = False) -> list[WindowClient]:
        """Return open windows, by default only those this worker controls."""
        with self._lock:
            clients = list(self._clients.values())
        if include_uncontrolled:
            return clients
        return [c for c in clients if c.controlled]

    def focus(self, client_id: int) -> WindowClient | None:
        """Bring a window to the foreground; every other window loses focus."""
        with self._lock:
            target = self._clients.get(client_id)
            if target is None:
                return None
            for client in self._clients.values():
                client.focused = client.id == client_id
        logger.debug("Focused window %d at %s", target.id, target.url)
        return target

    def open_window(self, url: str) -> WindowClient | None:
        """Open a new window at url (resolved against the origin).

        Returns:
            The new focused, controlled window, or None for a cross-origin URL.
        """
        absolute = urljoin(self._origin + "/", url)
        if not same_origin(absolute, self._origin):
            logger.warning("Refusing to open cross-origin window: %s", absolute)
            return None
        with self._lock:
            for client in self._clients.values():
                client.focused = False
            client = WindowClient(id=next(self._ids), url=absolute, controlled=True, focused=True)
            self._add(client)
        logger.info("Opened window at %s", absolute)
        return client

    def claim(self) -> int:
        """Take control of every open same-origin window. Returns how many were claimed."""
        claimed = 0
        with self._lock:
            for client in self._clients.values():
                if not client.controlled and same_origin(client.url, self._origin):
                    client.controlled = True
                    claimed += 1
        return claimed


def _text(value: object, default: str) -> str:
    if value is None or value == "":
        return default
    return str(value)


def parse_push_payload(
    data: bytes | str | None,
    default_title: str = DEFAULT_TITLE,
    default_url: str = DEFAULT_URL,
) -> PushPayload:
    """Turn a raw push message into a PushPayload.

    Anything that is not a JSON object degrades to the defaults; a
    malformed payload never prevents the notification.
    """
    fields: dict = {}
    if data:
        try:
            parsed = json.loads(data)
        except (ValueError, UnicodeDecodeError) as e:
            logger.debug("Unparsable push payload, using defaults: %s", e)
            parsed = {}
        if isinstance(parsed, dict):
            fields = parsed

    tag = fields.get("tag")
    return PushPayload(
        title=_text(fields.get("title"), default_title),
        body=_text(fields.get("body"), ""),
        url=_text(fields.get("url"), default_url),
        tag=str(tag) if tag else None,
    )


def show_push_notification(
    payload: PushPayload,
    center: NotificationCenter,
    icon: str | None = None,
    badge: str | None = None,
) -> Notification:
    """Display payload, attaching its target URL as notification data."""
    return center.show(
        title=payload.title,
        body=payload.body,
        icon=icon,
        badge=badge,
        data={"url": payload.url},
        tag=payload.tag,
    )


def route_notification_click(
    notification: Notification,
    clients: ClientRegistry,
    center: NotificationCenter,
    origin: str,
    default_url: str = DEFAULT_URL,
) -> WindowClient | None:
    """Close the notification and bring the user to its target URL.

    A controlled window already showing the target path is focused;
    otherwise a new window is opened there.
    """
    center.close(notification.id)

    url = _text(notification.data.get("url"), default_url)
    target_path = urlparse(urljoin(origin + "/", url)).path

    for client in clients.match_all():
        if urlparse(client.url).path == target_path:
            return clients.focus(client.id)

    return clients.open_window(url)
