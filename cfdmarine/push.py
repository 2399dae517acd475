"""Push subscription management and broadcast delivery.

Subscriptions live in the database. A broadcast POSTs the JSON payload to
every subscription endpoint (with retries); endpoints that answer 404 or
410 are gone and get pruned, anything else is kept for the next broadcast.
"""

import logging
import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from urllib.parse import quote

import requests

from .config import PushConfig
from .database import add_subscription, get_subscriptions, remove_subscriptions
from .models import PushPayload
from .security import SSRFError, validate_url_for_ssrf

logger = logging.getLogger(__name__)

MAX_WORKERS = 8

# Endpoint no longer exists
GONE_STATUSES = (404, 410)

# Delivery outcomes
SENT = "sent"
GONE = "gone"
FAILED = "failed"


class PushError(Exception):
    """Raised when a subscription request is invalid."""

    pass


@dataclass(frozen=True)
class BroadcastResult:
    sent: int = 0
    removed: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {"sent": self.sent, "removed": self.removed, "failed": self.failed}


def admin_test_payload() -> PushPayload:
    """Payload of the admin test notification."""
    return PushPayload(
        title="CFD Marine - Test",
        body="Push test from Admin.",
        url="/pages/maintenance-admin.html",
        tag="cfd-admin-test",
    )


def new_issue_payload(boat: str, description: str, severity: str | None = None) -> PushPayload:
    """Payload announcing a new maintenance issue on a boat."""
    return PushPayload(
        title="New Maintenance Issue",
        body=f"{boat}: {description} ({severity or 'Severity n/a'})",
        url=f"/pages/maintenance-boat.html?boat={quote(boat)}",
        tag="cfd-new-issue",
    )


def payload_to_dict(payload: PushPayload) -> dict:
    data = {"title": payload.title, "body": payload.body, "url": payload.url}
    if payload.tag:
        data["tag"] = payload.tag
    return data


class PushBroadcaster:
    """Manages push subscriptions and delivers broadcasts with retry."""

    def __init__(self, config: PushConfig, db_conn: sqlite3.Connection) -> None:
        """Initialize broadcaster.

        Args:
            config: Push configuration (retries, endpoint policy)
            db_conn: Database holding the subscriptions
        """
        self._config = config
        self._db_conn = db_conn

    def subscribe(self, subscription: object) -> bool:
        """Store a browser push subscription.

        Returns:
            True if the endpoint was not subscribed yet.

        Raises:
            PushError: If the subscription has no valid endpoint.
        """
        if not isinstance(subscription, dict) or not subscription.get("endpoint"):
            raise PushError("missing subscription")

        endpoint = str(subscription["endpoint"])
        try:
            validate_url_for_ssrf(endpoint, allow_private=self._config.allow_private_endpoints)
        except SSRFError as e:
            raise PushError(f"invalid endpoint: {e}")

        added = add_subscription(self._db_conn, subscription)
        if added:
            logger.info("Push subscription added for %s", endpoint)
        return added

    def unsubscribe(self, endpoint: str | None) -> int:
        """Remove a subscription. Returns how many were removed."""
        if not endpoint:
            return 0
        return remove_subscriptions(self._db_conn, [endpoint])

    def subscription_count(self) -> int:
        return len(get_subscriptions(self._db_conn))

    def broadcast(self, payload: PushPayload) -> BroadcastResult:
        """Deliver payload to every subscription and prune the gone ones."""
        subscriptions = get_subscriptions(self._db_conn)
        if not subscriptions:
            return BroadcastResult()

        body = payload_to_dict(payload)
        outcomes: dict[str, str] = {}
        with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(subscriptions))) as executor:
            futures = {
                executor.submit(self._deliver, sub["endpoint"], body): sub["endpoint"] for sub in subscriptions
            }
            for future in as_completed(futures):
                endpoint = futures[future]
                try:
                    outcomes[endpoint] = future.result()
                except Exception as e:
                    logger.error("Push delivery to %s crashed: %s", endpoint, e)
                    outcomes[endpoint] = FAILED

        gone = [endpoint for endpoint, outcome in outcomes.items() if outcome == GONE]
        removed = remove_subscriptions(self._db_conn, gone)
        result = BroadcastResult(
            sent=sum(1 for outcome in outcomes.values() if outcome == SENT),
            removed=removed,
            failed=sum(1 for outcome in outcomes.values() if outcome == FAILED),
        )
        logger.info(
            "Broadcast '%s': %d sent, %d removed, %d failed",
            payload.title,
            result.sent,
            result.removed,
            result.failed,
        )
        return result

    def _deliver(self, endpoint: str, body: dict) -> str:
        """Send one push message (with retries).

        Returns:
            SENT, GONE or FAILED.
        """
        try:
            validate_url_for_ssrf(endpoint, allow_private=self._config.allow_private_endpoints)
        except SSRFError as e:
            logger.error("Push endpoint validation failed for %s: %s", endpoint, e)
            return FAILED

        retry_count = 0
        while retry_count <= self._config.max_retries:
            try:
                response = requests.post(endpoint, json=body, timeout=10)
                if response.status_code in GONE_STATUSES:
                    logger.info("Push endpoint gone (%d): %s", response.status_code, endpoint)
                    return GONE
                response.raise_for_status()
                return SENT

            except requests.RequestException as e:
                retry_count += 1
                if retry_count <= self._config.max_retries:
                    delay = self._config.retry_delay * (2 ** (retry_count - 1))
                    logger.warning(
                        "Push to %s failed (attempt %d/%d, retrying in %ds): %s",
                        endpoint,
                        retry_count,
                        self._config.max_retries + 1,
                        delay,
                        e,
                    )
                    time.sleep(delay)
                else:
                    logger.error("Push to %s failed after %d attempts: %s", endpoint, retry_count, e)

        return FAILED
