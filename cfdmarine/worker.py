"""The offline cache worker: lifecycle, fetch routing and push handling.

All host events go through ServiceWorker.dispatch(). The worker owns three
version-tagged buckets:

    {version}-core      app shell and html pages
    {version}-static    styles, scripts, fonts and images
    {version}-runtime   everything else
"""

import logging
import threading
from dataclasses import dataclass

from .buckets import BucketStore, CacheBucket, CacheStorageError
from .classifier import RequestClass, classify
from .config import WorkerConfig
from .models import Request, Response
from .network import NetworkError
from .notifications import (
    ClientRegistry,
    Notification,
    NotificationCenter,
    WindowClient,
    parse_push_payload,
    route_notification_click,
    show_push_notification,
)
from .strategies import (
    BackgroundTasks,
    Fetcher,
    gateway_timeout,
    network_first,
    network_first_with_timeout,
    network_only,
    stale_while_revalidate,
)

logger = logging.getLogger(__name__)

SKIP_WAITING = "SKIP_WAITING"

# Lifecycle states
PARSED = "parsed"
INSTALLING = "installing"
INSTALLED = "installed"
ACTIVATING = "activating"
ACTIVATED = "activated"


@dataclass(frozen=True)
class InstallEvent:
    pass


@dataclass(frozen=True)
class ActivateEvent:
    pass


@dataclass(frozen=True)
class FetchEvent:
    request: Request


@dataclass(frozen=True)
class MessageEvent:
    data: object


@dataclass(frozen=True)
class PushEvent:
    data: bytes | str | None = None


@dataclass(frozen=True)
class NotificationClickEvent:
    notification_id: int


class ServiceWorker:
    """Cache orchestrator and notification relay for one origin.

    Example:
        worker = ServiceWorker(config, BucketStore(path), HttpFetcher(origin),
                               ClientRegistry(origin), NotificationCenter(),
                               version="cfd-marine-v8")
        worker.start()
        response = worker.dispatch(FetchEvent(Request(url)))
    """

    def __init__(
        self,
        config: WorkerConfig,
        storage: BucketStore,
        fetcher: Fetcher,
        clients: ClientRegistry,
        notifications: NotificationCenter,
        tasks: BackgroundTasks | None = None,
        version: str | None = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.fetcher = fetcher
        self.clients = clients
        self.notifications = notifications
        self.tasks = tasks or BackgroundTasks(config.background_workers)
        self.version = version or config.app_version
        if not self.version:
            raise ValueError("ServiceWorker needs an app version")

        self.core_bucket = f"{self.version}-core"
        self.static_bucket = f"{self.version}-static"
        self.runtime_bucket = f"{self.version}-runtime"
        self._core = storage.bucket(self.core_bucket)
        self._static = storage.bucket(self.static_bucket)
        self._runtime = storage.bucket(self.runtime_bucket)

        self._state = PARSED
        self._skip_waiting = False
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        return self._state

    @property
    def bucket_names(self) -> tuple[str, str, str]:
        return self.core_bucket, self.static_bucket, self.runtime_bucket

    def start(self) -> None:
        """Install, then activate when install requested eager takeover."""
        self.dispatch(InstallEvent())
        if self._skip_waiting:
            self.dispatch(ActivateEvent())

    def dispatch(self, event: object) -> Response | Notification | WindowClient | None:
        """Handle one host event.

        Returns:
            The Response for a FetchEvent (None when the request is not
            intercepted), the shown Notification for a PushEvent, the focused
            or opened window for a NotificationClickEvent, None otherwise.
        """
        if isinstance(event, FetchEvent):
            return self.handle_fetch(event.request)
        if isinstance(event, InstallEvent):
            self.install()
            return None
        if isinstance(event, ActivateEvent):
            self.activate()
            return None
        if isinstance(event, MessageEvent):
            self.handle_message(event.data)
            return None
        if isinstance(event, PushEvent):
            return self.handle_push(event.data)
        if isinstance(event, NotificationClickEvent):
            return self.handle_notification_click(event.notification_id)
        raise TypeError(f"Unsupported event: {type(event).__name__}")

    # Lifecycle

    def install(self) -> int:
        """Pre-cache the app shell into the core bucket.

        Each path is fetched and stored on its own; one failure never
        aborts the rest.

        Returns:
            Number of core assets cached.
        """
        with self._lock:
            self._state = INSTALLING

        cached = 0
        try:
            core = self.storage.open(self.core_bucket)
        except CacheStorageError as e:
            logger.warning("Cannot open %s, skipping pre-cache: %s", self.core_bucket, e)
            core = None

        if core is not None:
            for path in self.config.core_assets:
                if self._precache(core, path):
                    cached += 1
            logger.info(
                "Pre-cached %d/%d core assets into %s",
                cached,
                len(self.config.core_assets),
                self.core_bucket,
            )

        with self._lock:
            self._state = INSTALLED
        self.skip_waiting()
        return cached

    def _precache(self, core: CacheBucket, path: str) -> bool:
        request = Request(url=self.config.origin + path)
        try:
            response = self.fetcher.fetch(request)
        except NetworkError as e:
            logger.warning("Pre-cache failed for %s: %s", path, e)
            return False
        if not response.ok:
            logger.warning("Pre-cache failed for %s: HTTP %d", path, response.status)
            return False
        try:
            core.put(request, response)
        except CacheStorageError as e:
            logger.warning("Pre-cache write failed for %s: %s", path, e)
            return False
        return True

    def skip_waiting(self) -> None:
        """Request activation without waiting for existing pages to close."""
        self._skip_waiting = True

    def activate(self) -> list[str]:
        """Purge buckets from other versions and claim open windows.

        Returns:
            Names of the deleted buckets.
        """
        with self._lock:
            self._state = ACTIVATING

        deleted = []
        try:
            names = self.storage.keys()
        except CacheStorageError as e:
            logger.warning("Cannot list buckets, skipping purge: %s", e)
            names = []

        for name in names:
            if name.startswith(self.version + "-"):
                continue
            try:
                self.storage.delete(name)
                deleted.append(name)
            except CacheStorageError as e:
                logger.warning("Failed to delete stale bucket %s: %s", name, e)

        if deleted:
            logger.info("Purged %d stale bucket(s): %s", len(deleted), ", ".join(deleted))

        claimed = self.clients.claim()
        logger.debug("Claimed %d open window(s)", claimed)

        with self._lock:
            self._state = ACTIVATED
        logger.info("Worker %s activated", self.version)
        return deleted

    # Events

    def handle_message(self, data: object) -> None:
        if data == SKIP_WAITING or (isinstance(data, dict) and data.get("type") == SKIP_WAITING):
            self.skip_waiting()
            if self._state == INSTALLED:
                self.activate()
            return
        logger.debug("Ignoring message: %r", data)

    def handle_fetch(self, request: Request) -> Response | None:
        """Route an intercepted request to its strategy.

        Returns:
            The response for the page, or None when the worker does not
            intercept the request and the host should forward it untouched.

        Raises:
            NetworkError: For API calls whose network fetch failed; these are
                returned to the page unchanged.
        """
        if self._state != ACTIVATED:
            return None

        request_class = classify(request, self.config)
        if request_class is None or request_class == RequestClass.PASSTHROUGH:
            return None

        if request_class == RequestClass.NETWORK_ONLY:
            return network_only(request, self.fetcher)

        try:
            return self._apply_strategy(request_class, request)
        except Exception:
            logger.exception("Unexpected failure handling %s", request.url)
            return gateway_timeout(request, html=request_class == RequestClass.HTML)

    def _apply_strategy(self, request_class: RequestClass, request: Request) -> Response:
        if request_class == RequestClass.HTML:
            return network_first_with_timeout(request, self.fetcher, self._core, self.tasks, self.config.html_timeout)
        if request_class == RequestClass.IMAGE:
            return network_first(request, self.fetcher, self._static, self.tasks)
        if request_class == RequestClass.STATIC:
            return stale_while_revalidate(request, self.fetcher, self._static, self.tasks)
        return network_first(request, self.fetcher, self._runtime, self.tasks)

    def handle_push(self, data: bytes | str | None) -> Notification:
        payload = parse_push_payload(
            data,
            default_title=self.config.default_notification_title,
            default_url=self.config.default_notification_url,
        )
        return show_push_notification(
            payload,
            self.notifications,
            icon=self.config.notification_icon,
            badge=self.config.notification_badge,
        )

    def handle_notification_click(self, notification_id: int) -> WindowClient | None:
        notification = self.notifications.get(notification_id)
        if notification is None:
            logger.warning("Click on unknown notification %d", notification_id)
            return None
        return route_notification_click(
            notification,
            self.clients,
            self.notifications,
            self.config.origin,
            default_url=self.config.default_notification_url,
        )

    def shutdown(self) -> None:
        """Wait for detached cache writes and stop the task pool."""
        self.tasks.shutdown(wait=True)
