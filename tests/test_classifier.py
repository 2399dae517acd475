"""Tests for request classification and the shared request/response models."""

import pytest

from cfdmarine.classifier import RequestClass, classify, is_api_request, is_excluded_host
from cfdmarine.config import WorkerConfig
from cfdmarine.models import Request, Response, origin_of, same_origin

ORIGIN = "http://localhost:8080"


@pytest.fixture
def config() -> WorkerConfig:
    return WorkerConfig(origin=ORIGIN, app_version="v1")


class TestOrigins:
    """Tests for origin helpers."""

    def test_drops_default_port(self) -> None:
        """Default ports do not change the origin."""
        assert origin_of("http://Example.com:80/a") == "http://example.com"
        assert origin_of("https://example.com:443") == "https://example.com"

    def test_keeps_custom_port(self) -> None:
        assert origin_of("http://localhost:8080/x?y=1") == "http://localhost:8080"

    def test_relative_url_has_no_origin(self) -> None:
        assert origin_of("/index.html") == ""
        assert not same_origin("/index.html", ORIGIN)

    def test_same_origin(self) -> None:
        assert same_origin("http://localhost:8080/app.css", ORIGIN)
        assert not same_origin("http://localhost:9090/app.css", ORIGIN)
        assert not same_origin("https://localhost:8080/app.css", ORIGIN)


class TestModels:
    """Tests for Request and Response helpers."""

    def test_header_lookup_is_case_insensitive(self) -> None:
        request = Request(url=ORIGIN, headers={"Accept": "text/html"})
        assert request.header("accept") == "text/html"
        assert request.header("X-Missing", "none") == "none"

    def test_cache_key_normalizes(self) -> None:
        """Method is upper-cased and fragment stripped."""
        request = Request(url=ORIGIN + "/page#frag", method="get")
        assert request.cache_key == ("GET", ORIGIN + "/page")

    def test_response_ok(self) -> None:
        assert Response(status=204).ok
        assert not Response(status=304).ok
        assert not Response(status=0, type="opaque").ok


class TestExcludedHosts:
    """Tests for is_excluded_host."""

    def test_exact_and_subdomain(self) -> None:
        hosts = ("google.com",)
        assert is_excluded_host("https://google.com/x", hosts)
        assert is_excluded_host("https://accounts.google.com/x", hosts)

    def test_suffix_without_dot_not_excluded(self) -> None:
        """notgoogle.com is not a subdomain of google.com."""
        assert not is_excluded_host("https://notgoogle.com/", ("google.com",))

    def test_no_host(self) -> None:
        assert not is_excluded_host("/relative", ("google.com",))


class TestIsApiRequest:
    """Tests for is_api_request."""

    def test_prefix_in_path(self) -> None:
        assert is_api_request(Request(url=ORIGIN + "/api/marine"), "/api/")

    def test_json_accept(self) -> None:
        request = Request(url=ORIGIN + "/data", headers={"Accept": "application/json"})
        assert is_api_request(request, "/api/")

    def test_plain_page(self) -> None:
        assert not is_api_request(Request(url=ORIGIN + "/pages/gar.html"), "/api/")


class TestClassify:
    """Tests for classify."""

    def test_non_get_not_intercepted(self, config: WorkerConfig) -> None:
        assert classify(Request(url=ORIGIN + "/", method="POST"), config) is None

    def test_excluded_host_wins_over_everything(self, config: WorkerConfig) -> None:
        """Excluded hosts pass through even for navigations."""
        request = Request(url="https://www.gstatic.com/api/x", mode="navigate")
        assert classify(request, config) == RequestClass.PASSTHROUGH

    def test_api_before_html(self, config: WorkerConfig) -> None:
        """API calls are network-only even when they look like documents."""
        request = Request(url=ORIGIN + "/api/marine", mode="navigate")
        assert classify(request, config) == RequestClass.NETWORK_ONLY

    def test_cross_origin_api_path(self, config: WorkerConfig) -> None:
        """The prefix counts on any origin."""
        request = Request(url="https://other.example.com/api/thing")
        assert classify(request, config) == RequestClass.NETWORK_ONLY

    @pytest.mark.parametrize(
        "request_",
        [
            Request(url=ORIGIN + "/pages/gar.html", mode="navigate"),
            Request(url=ORIGIN + "/pages/gar.html", destination="document"),
            Request(url=ORIGIN + "/pages/gar.html", headers={"Accept": "text/html,*/*"}),
        ],
    )
    def test_html(self, config: WorkerConfig, request_: Request) -> None:
        assert classify(request_, config) == RequestClass.HTML

    def test_same_origin_image(self, config: WorkerConfig) -> None:
        request = Request(url=ORIGIN + "/assets/icons/icon-192.png", destination="image")
        assert classify(request, config) == RequestClass.IMAGE

    @pytest.mark.parametrize("destination", ["style", "script", "font"])
    def test_same_origin_static(self, config: WorkerConfig, destination: str) -> None:
        request = Request(url=ORIGIN + "/app.css", destination=destination)
        assert classify(request, config) == RequestClass.STATIC

    def test_cross_origin_image_is_runtime(self, config: WorkerConfig) -> None:
        """Cross-origin assets fall into the runtime class."""
        request = Request(url="https://tiles.example.com/a.png", destination="image")
        assert classify(request, config) == RequestClass.RUNTIME

    def test_unknown_destination_is_runtime(self, config: WorkerConfig) -> None:
        assert classify(Request(url=ORIGIN + "/data.txt"), config) == RequestClass.RUNTIME
