"""Tests for push payload handling and notification click routing."""

import json

import pytest

from cfdmarine.notifications import (
    DEFAULT_TITLE,
    DEFAULT_URL,
    ClientRegistry,
    NotificationCenter,
    parse_push_payload,
    route_notification_click,
    show_push_notification,
)

ORIGIN = "http://localhost:8080"


@pytest.fixture
def center() -> NotificationCenter:
    return NotificationCenter()


@pytest.fixture
def clients() -> ClientRegistry:
    return ClientRegistry(ORIGIN)


class TestParsePushPayload:
    """Tests for parse_push_payload."""

    def test_full_payload(self) -> None:
        payload = parse_push_payload(json.dumps({"title": "T", "body": "B", "url": "/x", "tag": "t1"}))
        assert payload.title == "T"
        assert payload.body == "B"
        assert payload.url == "/x"
        assert payload.tag == "t1"

    def test_bytes_payload(self) -> None:
        payload = parse_push_payload(b'{"title": "Bytes"}')
        assert payload.title == "Bytes"
        assert payload.url == DEFAULT_URL

    @pytest.mark.parametrize("data", [None, b"", "not json", "[1, 2]", '"just a string"'])
    def test_unusable_payload_uses_defaults(self, data) -> None:
        """Malformed payloads still produce a notification."""
        payload = parse_push_payload(data)
        assert payload.title == DEFAULT_TITLE
        assert payload.body == ""
        assert payload.url == DEFAULT_URL
        assert payload.tag is None

    def test_empty_fields_use_defaults(self) -> None:
        payload = parse_push_payload('{"title": "", "url": ""}')
        assert payload.title == DEFAULT_TITLE
        assert payload.url == DEFAULT_URL

    def test_custom_defaults(self) -> None:
        payload = parse_push_payload(None, default_title="Hello", default_url="/pages/gar.html")
        assert payload.title == "Hello"
        assert payload.url == "/pages/gar.html"


class TestNotificationCenter:
    """Tests for NotificationCenter."""

    def test_show_assigns_ids(self, center: NotificationCenter) -> None:
        first = center.show("a")
        second = center.show("b")
        assert second.id == first.id + 1
        assert [n.title for n in center.list()] == ["a", "b"]

    def test_tag_replaces_open_notification(self, center: NotificationCenter) -> None:
        center.show("old", tag="cfd-new-issue")
        newest = center.show("new", tag="cfd-new-issue")
        assert center.list() == [newest]

    def test_close(self, center: NotificationCenter) -> None:
        notification = center.show("a")
        assert center.close(notification.id) is True
        assert center.list() == []
        assert center.get(notification.id) is None
        assert center.close(999) is False

    def test_closed_notifications_are_forgotten(self, center: NotificationCenter) -> None:
        """Show and dismiss cycles do not accumulate records."""
        for i in range(500):
            notification = center.show(f"Issue {i}")
            center.close(notification.id)
        assert center.list() == []
        assert len(center._notifications) == 0

    def test_show_push_notification_sets_url_data(self, center: NotificationCenter) -> None:
        payload = parse_push_payload('{"title": "T", "url": "/pages/gar.html"}')
        notification = show_push_notification(payload, center, icon="/i.png", badge="/b.png")
        assert notification.data == {"url": "/pages/gar.html"}
        assert notification.icon == "/i.png"
        assert notification.badge == "/b.png"


class TestClientRegistry:
    """Tests for ClientRegistry."""

    def test_match_all_controlled_only(self, clients: ClientRegistry) -> None:
        controlled = clients.register(ORIGIN + "/a", controlled=True)
        clients.register(ORIGIN + "/b")
        assert clients.match_all() == [controlled]
        assert len(clients.match_all(include_uncontrolled=True)) == 2

    def test_focus_is_exclusive(self, clients: ClientRegistry) -> None:
        a = clients.register(ORIGIN + "/a")
        b = clients.register(ORIGIN + "/b")
        clients.focus(a.id)
        clients.focus(b.id)
        assert not a.focused
        assert b.focused

    def test_focus_unknown(self, clients: ClientRegistry) -> None:
        assert clients.focus(42) is None

    def test_open_window_resolves_relative(self, clients: ClientRegistry) -> None:
        client = clients.open_window("/pages/gar.html")
        assert client.url == ORIGIN + "/pages/gar.html"
        assert client.controlled
        assert client.focused

    def test_open_window_refuses_cross_origin(self, clients: ClientRegistry) -> None:
        assert clients.open_window("https://evil.example.com/") is None
        assert clients.match_all(include_uncontrolled=True) == []

    def test_claim_same_origin_only(self, clients: ClientRegistry) -> None:
        local = clients.register(ORIGIN + "/a")
        foreign = clients.register("https://other.example.com/")
        assert clients.claim() == 1
        assert local.controlled
        assert not foreign.controlled

    def test_remove(self, clients: ClientRegistry) -> None:
        client = clients.register(ORIGIN + "/a")
        assert clients.remove(client.id) is True
        assert clients.get(client.id) is None

    def test_window_cap_forgets_oldest_unfocused(self) -> None:
        clients = ClientRegistry(ORIGIN, max_windows=3)
        first = clients.open_window("/pages/gar.html")
        clients.focus(first.id)
        second = clients.register(ORIGIN + "/a")
        clients.register(ORIGIN + "/b")

        clients.register(ORIGIN + "/c")

        assert len(clients.match_all(include_uncontrolled=True)) == 3
        assert clients.get(first.id) is first
        assert clients.get(second.id) is None

    def test_repeated_clicks_stay_bounded(self, center: NotificationCenter) -> None:
        clients = ClientRegistry(ORIGIN, max_windows=4)
        for i in range(50):
            notification = center.show("T", data={"url": f"/pages/issue-{i}.html"})
            route_notification_click(notification, clients, center, ORIGIN)
        windows = clients.match_all()
        assert len(windows) == 4
        assert windows[-1].url == ORIGIN + "/pages/issue-49.html"
        assert windows[-1].focused
        assert center.list() == []


class TestRouteNotificationClick:
    """Tests for route_notification_click."""

    def test_focuses_window_on_same_path(self, center: NotificationCenter, clients: ClientRegistry) -> None:
        """An open controlled window at the target path is reused."""
        existing = clients.register(ORIGIN + "/pages/maintenance.html?boat=Marine%201", controlled=True)
        notification = center.show("T", data={"url": "/pages/maintenance.html"})

        client = route_notification_click(notification, clients, center, ORIGIN)

        assert client is existing
        assert client.focused
        assert len(clients.match_all()) == 1
        assert center.get(notification.id) is None

    def test_opens_window_when_no_match(self, center: NotificationCenter, clients: ClientRegistry) -> None:
        clients.register(ORIGIN + "/pages/gar.html", controlled=True)
        notification = center.show("T", data={"url": "/x"})

        client = route_notification_click(notification, clients, center, ORIGIN)

        assert client.url == ORIGIN + "/x"
        assert client.focused
        assert len(clients.match_all()) == 2

    def test_uncontrolled_window_not_reused(self, center: NotificationCenter, clients: ClientRegistry) -> None:
        clients.register(ORIGIN + "/x")
        notification = center.show("T", data={"url": "/x"})

        client = route_notification_click(notification, clients, center, ORIGIN)

        assert client.controlled
        assert len(clients.match_all(include_uncontrolled=True)) == 2

    def test_missing_url_uses_default(self, center: NotificationCenter, clients: ClientRegistry) -> None:
        notification = center.show("T")
        client = route_notification_click(notification, clients, center, ORIGIN)
        assert client.url == ORIGIN + DEFAULT_URL
