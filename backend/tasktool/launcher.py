from __future__ import annotations

import logging
import webbrowser
from typing import Optional, Tuple
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


def validate_ticket_url(url: Optional[str]) -> Tuple[bool, str]:
    if not url or not url.strip():
        return False, "Ticket URL ist leer."
    parsed = urlparse(url.strip())
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return False, "Ticket URL ist ungültig (nur http/https)."
    return True, ""


def try_open(url: Optional[str]) -> Tuple[bool, str]:
    """Open an absolute http(s) URL in the default browser."""
    ok, error = validate_ticket_url(url)
    if not ok:
        return False, error
    target = url.strip()
    try:
        opened = webbrowser.open(target)
    except webbrowser.Error as exc:
        logger.error("Opening %s failed: %s", target, exc)
        return False, f"Ticket URL konnte nicht geöffnet werden: {exc}"
    if not opened:
        return False, "Ticket URL konnte nicht geöffnet werden: kein Browser verfügbar."
    return True, ""
