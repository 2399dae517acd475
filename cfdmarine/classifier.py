"""Request classification for the cache worker."""

from enum import Enum
from urllib.parse import urlparse

from .config import WorkerConfig
from .models import Request, same_origin

STATIC_DESTINATIONS = ("style", "script", "font")


class RequestClass(str, Enum):
    """How the worker handles an intercepted request."""

    PASSTHROUGH = "passthrough"
    NETWORK_ONLY = "passthrough-network-only"
    HTML = "html"
    IMAGE = "image"
    STATIC = "static"
    RUNTIME = "runtime"


def is_excluded_host(url: str, excluded_hosts: tuple[str, ...]) -> bool:
    """Check whether url targets an excluded domain or one of its subdomains."""
    host = (urlparse(url).hostname or "").lower()
    if not host:
        return False
    return any(host == domain or host.endswith("." + domain) for domain in excluded_hosts)


def is_api_request(request: Request, api_prefix: str) -> bool:
    """API calls: the function prefix anywhere in the URL path, or a JSON accept type."""
    path = urlparse(request.url).path
    return api_prefix in path or "application/json" in request.header("Accept").lower()


def is_html_request(request: Request) -> bool:
    """Top-level navigations and explicit HTML document requests."""
    return (
        request.mode == "navigate"
        or request.destination == "document"
        or "text/html" in request.header("Accept").lower()
    )


def classify(request: Request, config: WorkerConfig) -> RequestClass | None:
    """Assign a request to exactly one handling class.

    Precedence: excluded host, API call, document navigation, same-origin
    image, same-origin style/script/font, everything else.

    Returns:
        The request class, or None for non-GET requests, which the worker
        never intercepts.
    """
    if request.method.upper() != "GET":
        return None

    if is_excluded_host(request.url, config.excluded_hosts):
        return RequestClass.PASSTHROUGH

    if is_api_request(request, config.api_prefix):
        return RequestClass.NETWORK_ONLY

    if is_html_request(request):
        return RequestClass.HTML

    if same_origin(request.url, config.origin):
        if request.destination == "image":
            return RequestClass.IMAGE
        if request.destination in STATIC_DESTINATIONS:
            return RequestClass.STATIC

    return RequestClass.RUNTIME
