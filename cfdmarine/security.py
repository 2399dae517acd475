"""Security utilities for CFD Marine."""

import hmac
import ipaddress
import logging
import re
import socket
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Blocked ports (common internal services)
BLOCKED_PORTS = [
    22,  # SSH
    23,  # Telnet
    25,  # SMTP
    3306,  # MySQL
    5432,  # PostgreSQL
    6379,  # Redis
    27017,  # MongoDB
    9200,  # Elasticsearch
    9300,  # Elasticsearch
]

# Private IP ranges to block
PRIVATE_IP_RANGES = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("169.254.0.0/16"),  # Cloud metadata (AWS, etc.)
]

LOCALHOST_NAMES = {
    "localhost",
    "127.0.0.1",
    "::1",
    "0.0.0.0",
    "localhost.localdomain",
    "ip6-localhost",
    "ip6-loopback",
}

# Uploaded resource names: a base name with an extension, no separators.
FILE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 ._()-]*$")
MAX_FILE_NAME_LENGTH = 128


class SSRFError(Exception):
    """Raised when a URL fails SSRF validation."""

    pass


def validate_url_for_ssrf(url: str, allow_private: bool = False) -> None:
    """Validate an outbound URL (push endpoints) to prevent SSRF attacks.

    Args:
        url: The URL to validate
        allow_private: If True, skip the resolved-IP checks (crew LAN setups)

    Raises:
        SSRFError: If URL is potentially dangerous
    """
    try:
        parsed = urlparse(url)
    except ValueError as e:
        raise SSRFError(f"Invalid URL format: {e}")

    if parsed.scheme not in ("http", "https"):
        raise SSRFError(f"Scheme '{parsed.scheme}' not allowed. Only http:// and https:// are permitted.")

    try:
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
    except ValueError as e:
        raise SSRFError(f"Invalid port in URL: {e}")

    if port in BLOCKED_PORTS:
        raise SSRFError(f"Port {port} is blocked for security reasons")

    hostname = parsed.hostname
    if not hostname:
        raise SSRFError("No hostname in URL")

    if hostname.lower() in LOCALHOST_NAMES:
        raise SSRFError(f"Localhost access not allowed: {hostname}")

    if allow_private:
        return

    try:
        ip = socket.gethostbyname(hostname)
        ip_obj = ipaddress.ip_address(ip)

        for private_range in PRIVATE_IP_RANGES:
            if ip_obj in private_range:
                raise SSRFError(f"Private IP address not allowed: {ip} (resolved from {hostname})")

        if ip_obj.is_multicast or ip_obj.is_reserved:
            raise SSRFError(f"Reserved IP address not allowed: {ip}")

    except socket.gaierror as e:
        raise SSRFError(f"Cannot resolve hostname '{hostname}': {e}")


def is_allowed_proxy_target(url: str, allowed_hosts: tuple[str, ...]) -> bool:
    """Check a proxy target against the host allow-list (exact host match, http(s) only)."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return False
    return (parsed.hostname or "").lower() in {h.lower() for h in allowed_hosts}


def validate_file_name(name: str | None) -> str | None:
    """Validate and sanitize an uploaded file name from user input.

    Args:
        name: Raw file name

    Returns:
        Validated name if safe, None if invalid
    """
    if not name or not isinstance(name, str):
        return None

    name = name.strip()

    # Reject path traversal sequences
    if ".." in name or "/" in name or "\\" in name:
        logger.warning("Path traversal attempt in file name: %s", name)
        return None

    # Reject null bytes and control characters
    if any(ord(c) < 32 for c in name):
        logger.warning("Control characters in file name: %r", name)
        return None

    if len(name) > MAX_FILE_NAME_LENGTH:
        logger.warning("File name too long: %s", name)
        return None

    if not FILE_NAME_PATTERN.match(name):
        logger.warning("Invalid characters in file name: %s", name)
        return None

    return name


def check_admin_key(supplied: str | None, admin_key: str | None) -> bool:
    """Admin actions are open when no key is configured."""
    if admin_key is None:
        return True
    return hmac.compare_digest((supplied or "").encode(), admin_key.encode())
