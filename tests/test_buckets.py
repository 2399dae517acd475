"""Tests for the bucket storage module."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from cfdmarine.buckets import BucketStore, CacheStorageError
from cfdmarine.models import Request, Response


@pytest.fixture
def store(tmp_path: Path) -> Iterator[BucketStore]:
    """Create a bucket store in a temporary directory."""
    store = BucketStore(str(tmp_path / "cache" / "buckets.db"))
    yield store
    store.close()


@pytest.fixture
def response() -> Response:
    return Response(
        status=200,
        status_text="OK",
        headers={"Content-Type": "text/html"},
        body=b"<h1>hi</h1>",
        url="http://localhost:8080/index.html",
    )


class TestBucketStore:
    """Tests for BucketStore."""

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        """The database directory is created on demand."""
        path = tmp_path / "a" / "b" / "buckets.db"
        BucketStore(str(path)).close()
        assert path.exists()

    def test_open_creates_bucket(self, store: BucketStore) -> None:
        """open() creates missing buckets."""
        assert not store.has("v1-core")
        store.open("v1-core")
        assert store.has("v1-core")

    def test_keys_in_creation_order(self, store: BucketStore) -> None:
        """keys() lists buckets in creation order."""
        store.open("v1-core")
        store.open("v1-static")
        store.open("v1-core")
        assert store.keys() == ["v1-core", "v1-static"]

    def test_delete_removes_bucket_and_entries(self, store: BucketStore, response: Response) -> None:
        """Deleting a bucket drops its entries too."""
        request = Request(url="http://localhost:8080/index.html")
        store.open("v1-core").put(request, response)

        assert store.delete("v1-core") is True
        assert not store.has("v1-core")
        assert store.open("v1-core").match(request) is None

    def test_delete_missing_bucket(self, store: BucketStore) -> None:
        """Deleting an unknown bucket returns False."""
        assert store.delete("nope") is False

    def test_persists_across_instances(self, tmp_path: Path, response: Response) -> None:
        """Entries survive reopening the store."""
        path = str(tmp_path / "buckets.db")
        request = Request(url="http://localhost:8080/index.html")

        first = BucketStore(path)
        first.open("v1-core").put(request, response)
        first.close()

        second = BucketStore(path)
        try:
            assert second.open("v1-core").match(request) == response
        finally:
            second.close()


class TestCacheBucket:
    """Tests for CacheBucket."""

    def test_match_missing(self, store: BucketStore) -> None:
        """Unknown requests have no match."""
        bucket = store.open("v1-runtime")
        assert bucket.match(Request(url="http://localhost:8080/x")) is None

    def test_put_and_match(self, store: BucketStore, response: Response) -> None:
        """A stored response is returned unchanged."""
        bucket = store.open("v1-core")
        request = Request(url="http://localhost:8080/index.html")
        bucket.put(request, response)

        cached = bucket.match(request)

        assert cached == response
        assert cached.header("content-type") == "text/html"

    def test_fragment_ignored_in_key(self, store: BucketStore, response: Response) -> None:
        """Fragments do not change the cache identity."""
        bucket = store.open("v1-core")
        bucket.put(Request(url="http://localhost:8080/index.html#top"), response)
        assert bucket.match(Request(url="http://localhost:8080/index.html")) is not None

    def test_query_is_part_of_key(self, store: BucketStore, response: Response) -> None:
        """Different query strings are different entries."""
        bucket = store.open("v1-runtime")
        bucket.put(Request(url="http://localhost:8080/page?a=1"), response)
        assert bucket.match(Request(url="http://localhost:8080/page?a=2")) is None

    def test_last_write_wins(self, store: BucketStore, response: Response) -> None:
        """A second put replaces the first."""
        bucket = store.open("v1-core")
        request = Request(url="http://localhost:8080/index.html")
        bucket.put(request, response)
        newer = Response(status=200, body=b"newer", url=request.url)
        bucket.put(request, newer)

        assert bucket.match(request).body == b"newer"
        assert bucket.keys() == ["http://localhost:8080/index.html"]

    def test_buckets_are_isolated(self, store: BucketStore, response: Response) -> None:
        """Entries never leak between buckets."""
        request = Request(url="http://localhost:8080/index.html")
        store.open("v1-core").put(request, response)
        assert store.open("v1-static").match(request) is None

    def test_put_rejects_non_get(self, store: BucketStore, response: Response) -> None:
        """Only GET requests are cacheable."""
        bucket = store.open("v1-runtime")
        with pytest.raises(CacheStorageError, match="GET"):
            bucket.put(Request(url="http://localhost:8080/form", method="POST"), response)

    def test_delete_entry(self, store: BucketStore, response: Response) -> None:
        """delete() removes one entry."""
        bucket = store.open("v1-core")
        request = Request(url="http://localhost:8080/index.html")
        bucket.put(request, response)

        assert bucket.delete(request) is True
        assert bucket.delete(request) is False
        assert bucket.keys() == []
