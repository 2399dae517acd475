"""Caching strategies applied per request class.

Each strategy takes the request, the fetcher, the target bucket and the
background task pool, and returns a Response. Cache writes are detached
background tasks: they are submitted before the strategy returns, but never
awaited, and their failures never reach the page.

Strategies:
- html: network-first, raced against a short timer, falls back to the core bucket
- image/runtime: network-first, falls back to the bucket on network failure
- static: stale-while-revalidate
- API: network only, no bucket access at all
"""

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Protocol

from .buckets import CacheBucket, CacheStorageError
from .models import Request, Response
from .network import NetworkError

logger = logging.getLogger(__name__)

# Default bound for the html network race, in seconds.
HTML_TIMEOUT_SECONDS = 1.5

OFFLINE_PAGE = b"""<!DOCTYPE html><html><head><meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>CFD Marine - Offline</title>
<style>body{background:#121212;color:#fff;font-family:Arial,sans-serif;display:flex;
justify-content:center;align-items:center;height:100vh;margin:0}div{text-align:center}
h1{color:#ffcc00}p{opacity:0.7}</style></head>
<body><div><h1>Content unavailable</h1><p>The network is unreachable and this page is not cached yet.<br>
Try again when you are back in coverage.</p></div></body></html>"""


class Fetcher(Protocol):
    def fetch(self, request: Request) -> Response: ...


class BackgroundTasks:
    """Thread pool for network races and fire-and-forget cache writes.

    Tracks pending futures so tests and shutdown can wait for detached
    work to settle.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sw-task")
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        """Run fn in the background and return its future."""
        future = self._executor.submit(fn, *args)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def start(self, fn: Callable[..., Any], *args: Any) -> Future:
        """Run fn on a thread of its own, outside the pool, and return its future.

        Used for calls raced against a timer, which must not queue behind
        detached work.
        """
        future: Future = Future()
        future.set_running_or_notify_cancel()
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

        def _run() -> None:
            try:
                result = fn(*args)
            except BaseException as e:
                future.set_exception(e)
            else:
                future.set_result(result)

        threading.Thread(target=_run, name="sw-race", daemon=True).start()
        return future

    def spawn(self, fn: Callable[..., Any], *args: Any, description: str = "background task") -> None:
        """Run fn detached. Failures are logged at debug level and dropped."""

        def _run() -> None:
            try:
                fn(*args)
            except Exception as e:
                logger.debug("%s failed: %s", description, e)

        self.submit(_run)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until no background work is pending.

        Work spawned by tasks that finish while draining is waited for too.

        Returns:
            True if everything settled before the timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = list(self._pending)
            if not pending:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            for future in pending:
                try:
                    future.exception(timeout=remaining)
                except FutureTimeoutError:
                    return False

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)


def gateway_timeout(request: Request, html: bool = False) -> Response:
    """Synthetic 504 returned when neither the network nor a bucket can answer."""
    if html:
        headers = {"Content-Type": "text/html; charset=utf-8", "Cache-Control": "no-store"}
        body = OFFLINE_PAGE
    else:
        headers = {"Cache-Control": "no-store"}
        body = b""
    return Response(
        status=504,
        status_text="Gateway Timeout",
        headers=headers,
        body=body,
        url=request.url,
        type="error",
    )


def is_storable(response: Response) -> bool:
    """Only successful, same-origin, basic responses that were not redirected are persisted."""
    return response.ok and response.type == "basic" and not response.redirected


def _match_quietly(bucket: CacheBucket, request: Request) -> Response | None:
    try:
        return bucket.match(request)
    except CacheStorageError as e:
        logger.warning("Cache read failed in %s for %s: %s", bucket.name, request.url, e)
        return None


def _fetch_and_store(request: Request, fetcher: Fetcher, bucket: CacheBucket, tasks: BackgroundTasks) -> Response:
    response = fetcher.fetch(request)
    if is_storable(response):
        tasks.spawn(bucket.put, request, response, description=f"cache write to {bucket.name}")
    return response


def network_first_with_timeout(
    request: Request,
    fetcher: Fetcher,
    bucket: CacheBucket,
    tasks: BackgroundTasks,
    timeout: float = HTML_TIMEOUT_SECONDS,
) -> Response:
    """Race the network against a timer; fall back to the bucket when the timer wins.

    The network call is never cancelled. When it loses the race it keeps
    running and still refreshes the bucket on success. It runs on its own
    thread so the timer is not eaten by detached work queued in the pool.
    """
    network = tasks.start(_fetch_and_store, request, fetcher, bucket, tasks)
    try:
        return network.result(timeout=timeout)
    except FutureTimeoutError:
        logger.debug("Network slower than %.0fms for %s", timeout * 1000, request.url)
        network_failed = False
    except NetworkError:
        network_failed = True

    cached = _match_quietly(bucket, request)
    if cached is not None:
        return cached

    if network_failed:
        return gateway_timeout(request, html=True)

    try:
        return network.result()
    except NetworkError:
        return gateway_timeout(request, html=True)


def network_first(request: Request, fetcher: Fetcher, bucket: CacheBucket, tasks: BackgroundTasks) -> Response:
    """Prefer fresh content; serve the bucket only when the network fails."""
    try:
        return _fetch_and_store(request, fetcher, bucket, tasks)
    except NetworkError:
        cached = _match_quietly(bucket, request)
        if cached is not None:
            return cached
        return gateway_timeout(request)


def stale_while_revalidate(
    request: Request,
    fetcher: Fetcher,
    bucket: CacheBucket,
    tasks: BackgroundTasks,
) -> Response:
    """Serve the bucket immediately and refresh it in the background."""
    cached = _match_quietly(bucket, request)
    if cached is not None:
        tasks.spawn(_fetch_and_store, request, fetcher, bucket, tasks, description=f"revalidate {request.url}")
        return cached

    try:
        return _fetch_and_store(request, fetcher, bucket, tasks)
    except NetworkError:
        return gateway_timeout(request)


def network_only(request: Request, fetcher: Fetcher) -> Response:
    """Always fetch fresh; never read or write a bucket.

    Raises:
        NetworkError: Propagated unchanged so the host can report it.
    """
    return fetcher.fetch(request)
