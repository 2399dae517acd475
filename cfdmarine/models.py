"""Data models shared by the worker, its strategies and the gateway."""

from dataclasses import dataclass, field
from urllib.parse import urldefrag, urlparse

RESPONSE_TYPES = ("basic", "cors", "opaque", "error")

_DEFAULT_PORTS = {"http": 80, "https": 443}


def origin_of(url: str) -> str:
    """Return the scheme://host[:port] origin of a URL, lowercased.

    Default ports are dropped so http://a:80 and http://a share an origin.
    Returns an empty string for URLs without a scheme or host.
    """
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.hostname:
        return ""
    scheme = parsed.scheme.lower()
    host = parsed.hostname.lower()
    try:
        port = parsed.port
    except ValueError:
        return ""
    if port is None or port == _DEFAULT_PORTS.get(scheme):
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def same_origin(url: str, origin: str) -> bool:
    """Check whether url belongs to origin."""
    url_origin = origin_of(url)
    return bool(url_origin) and url_origin == origin_of(origin)


def normalize_url(url: str) -> str:
    """Strip the fragment; fragments never reach the network or the cache key."""
    return urldefrag(url)[0]


def _lookup(headers: dict[str, str], name: str) -> str | None:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


@dataclass(frozen=True)
class Request:
    """An intercepted page request.

    Attributes:
        url: Absolute request URL.
        method: HTTP method, upper-case.
        headers: Request headers as sent by the page.
        mode: Fetch mode ("navigate", "cors", "no-cors", "same-origin").
        destination: Fetch destination ("document", "image", "style",
            "script", "font", or "" when unknown).
        body: Request body for non-GET requests.
    """

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    mode: str = "no-cors"
    destination: str = ""
    body: bytes | None = None

    def header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        value = _lookup(self.headers, name)
        return default if value is None else value

    @property
    def cache_key(self) -> tuple[str, str]:
        """Normalized request identity used as the bucket key."""
        return self.method.upper(), normalize_url(self.url)


@dataclass(frozen=True)
class Response:
    """A response snapshot, either live from the network or read from a bucket.

    Responses are immutable, so the same object can be returned to the page
    and written to a bucket without cloning.

    Attributes:
        status: HTTP status code (0 for network-level errors).
        status_text: Reason phrase.
        headers: Response headers.
        body: Response body.
        url: Final response URL after redirects.
        type: "basic" for readable same-origin responses, "cors" for readable
            cross-origin ones, "opaque" when status and body are hidden,
            "error" for synthetic failures.
        redirected: Whether the response followed at least one redirect.
    """

    status: int
    status_text: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    url: str = ""
    type: str = "basic"
    redirected: bool = False

    @property
    def ok(self) -> bool:
        """True for 2xx responses."""
        return 200 <= self.status < 300

    def header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        value = _lookup(self.headers, name)
        return default if value is None else value


@dataclass(frozen=True)
class PushPayload:
    """Contents of one push message. Never persisted."""

    title: str
    body: str
    url: str
    tag: str | None = None
