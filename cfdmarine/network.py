"""Network access for the worker, built on requests."""

import logging

import requests

from .models import Request, Response, same_origin

logger = logging.getLogger(__name__)

# Headers that describe a single connection and must not be replayed.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

# requests decodes compressed bodies, so the length/encoding of the wire
# payload no longer apply to Response.body.
_DECODED_BODY_HEADERS = frozenset({"content-encoding", "content-length"})

DEFAULT_USER_AGENT = "CFD-Marine-Team-App/1.0"


class NetworkError(Exception):
    """Raised when a fetch fails before any response arrives."""

    pass


def _forwardable_headers(headers: dict[str, str]) -> dict[str, str]:
    return {
        name: value
        for name, value in headers.items()
        if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() != "host"
    }


class HttpFetcher:
    """Performs worker fetches against the network.

    A response is "basic" only when both the request URL and the final
    URL after redirects belong to the worker's origin. Cross-origin
    responses are readable from Python, so they are typed "cors".
    """

    def __init__(
        self,
        origin: str,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        session: requests.Session | None = None,
    ) -> None:
        self._origin = origin
        self._timeout = timeout
        self._user_agent = user_agent
        self._session = session or requests.Session()

    @property
    def origin(self) -> str:
        return self._origin

    def fetch(self, request: Request) -> Response:
        """Send request and return the response snapshot.

        Raises:
            NetworkError: On connection failures, timeouts and invalid URLs.
        """
        headers = _forwardable_headers(request.headers)
        headers.setdefault("User-Agent", self._user_agent)

        try:
            upstream = self._session.request(
                request.method,
                request.url,
                headers=headers,
                data=request.body,
                timeout=self._timeout,
                allow_redirects=True,
            )
            body = upstream.content
        except requests.RequestException as e:
            logger.debug("Fetch failed for %s: %s", request.url, e)
            raise NetworkError(f"{request.method} {request.url} failed: {e}") from e

        final_url = upstream.url or request.url
        if same_origin(request.url, self._origin) and same_origin(final_url, self._origin):
            response_type = "basic"
        else:
            response_type = "cors"

        response_headers = {
            name: value
            for name, value in upstream.headers.items()
            if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() not in _DECODED_BODY_HEADERS
        }

        return Response(
            status=upstream.status_code,
            status_text=upstream.reason or "",
            headers=response_headers,
            body=body,
            url=final_url,
            type=response_type,
            redirected=bool(upstream.history),
        )

    def close(self) -> None:
        self._session.close()
