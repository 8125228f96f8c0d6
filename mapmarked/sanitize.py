# sanitize.py
"""
Input validation and sanitization.

Everything a client sends is checked here before it is forwarded to
Stripe, Printful or the render server.
"""

import base64
import binascii
import logging
import math
import re
from io import BytesIO
from typing import Any, List, Optional, Tuple
from urllib.parse import urlparse

from PIL import Image, UnidentifiedImageError

from mapmarked.errors import InvalidImage

log = logging.getLogger(__name__)

VALID_THEMES = ["obsidian", "cobalt", "parchment", "emerald", "copper"]
DETAIL_LINE_TYPES = ("coordinates", "address", "none")
PRICE_TYPES = ("single", "subscription")

MAX_IMAGE_MB = 50
MAX_IMAGE_BYTES = MAX_IMAGE_MB * 1024 * 1024

_TAG_RE = re.compile(r"<[^>]*>")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_DATA_URL_RE = re.compile(r"^data:([^;,]+);base64,(.+)$", re.DOTALL)
_SAFE_PUNCTUATION = set(".,-'°/")


def sanitize_text(value: Any, max_length: int = 100) -> str:
    """Strips tags/control chars and keeps letters, digits, spaces and . , - ' ° /"""
    if not isinstance(value, str):
        return ""

    cleaned = _TAG_RE.sub("", value)
    cleaned = _CONTROL_RE.sub("", cleaned)
    cleaned = re.sub(r"[\n\r\t]", " ", cleaned)
    cleaned = "".join(ch for ch in cleaned if ch.isalnum() or ch.isspace() or ch in _SAFE_PUNCTUATION)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()

    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length].strip()
    return cleaned


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def validate_coordinates(center: Any) -> bool:
    """center must be [lng, lat] inside the valid ranges."""
    if not isinstance(center, (list, tuple)) or len(center) != 2:
        return False
    lng, lat = center
    if not (_is_number(lng) and _is_number(lat)):
        return False
    return -180 <= lng <= 180 and -90 <= lat <= 90


def validate_zoom(zoom: Any) -> bool:
    return _is_number(zoom) and 0 <= zoom <= 22


def sanitize_theme_id(theme_id: Any, valid_themes: Optional[List[str]] = None) -> Optional[str]:
    if not isinstance(theme_id, str):
        return None
    normalized = theme_id.strip().lower()
    return normalized if normalized in (valid_themes or VALID_THEMES) else None


def validate_detail_line_type(value: Any) -> bool:
    return value in DETAIL_LINE_TYPES


def validate_price_type(value: Any) -> bool:
    return value in PRICE_TYPES


def validate_focus_point(focus_point: Any) -> bool:
    """Optional {lat, lng, address?} focus marker."""
    if focus_point is None:
        return True
    if not isinstance(focus_point, dict):
        return False
    lat, lng = focus_point.get("lat"), focus_point.get("lng")
    if not validate_coordinates([lng, lat]):
        return False
    address = focus_point.get("address")
    return address is None or isinstance(address, str)


def validate_return_url(return_url: Optional[str], allowed_hosts: List[str]) -> Optional[str]:
    """
    Open-redirect guard. Returns the URL only if its host is allowlisted
    (or a *.vercel.app preview host), else None.
    """
    if not return_url:
        return None
    try:
        parsed = urlparse(return_url)
    except ValueError:
        log.warning(f"Blocked malformed returnUrl: {return_url[:200]}")
        return None

    hostname = (parsed.hostname or "").lower()
    if parsed.scheme not in ("http", "https") or not hostname:
        log.warning(f"Blocked malformed returnUrl: {return_url[:200]}")
        return None
    if hostname in allowed_hosts or hostname.endswith(".vercel.app"):
        return return_url

    log.warning(f"Blocked invalid returnUrl host: {hostname}")
    return None


def validate_hosted_image_url(image_url: Any, allowed_hosts: List[str]) -> bool:
    """https URL on an allowlisted host or one of its subdomains (per-store blob hosts)."""
    if not isinstance(image_url, str):
        return False
    try:
        parsed = urlparse(image_url)
    except ValueError:
        return False

    hostname = (parsed.hostname or "").lower()
    if parsed.scheme != "https" or not hostname:
        return False
    return any(hostname == host or hostname.endswith("." + host) for host in allowed_hosts)


def decode_image_data_url(data_url: Any) -> Tuple[str, bytes]:
    """
    Parses `data:<mime>;base64,<payload>` and returns (mime_type, raw bytes).
    Raises InvalidImage on a malformed URI, oversized payload or bytes that
    Pillow cannot identify as an image.
    """
    if not isinstance(data_url, str):
        raise InvalidImage("Image payload must be a string data URI.")

    match = _DATA_URL_RE.match(data_url.strip())
    if not match:
        raise InvalidImage("Invalid data URI format.")
    mime_type, payload = match.group(1), match.group(2)

    # base64 inflates by 4/3; reject before decoding huge payloads
    if len(payload) * 3 // 4 > MAX_IMAGE_BYTES:
        raise InvalidImage(f"Image too large (max {MAX_IMAGE_MB}MB).")

    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidImage(f"Invalid base64 payload: {e}") from e

    try:
        img = Image.open(BytesIO(raw))
        img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise InvalidImage(f"Payload is not a valid image: {e}") from e

    return mime_type, raw
