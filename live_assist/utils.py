"""Utilities supporting live-assist modules."""

from __future__ import annotations

import logging
import random
import socket
import string
from typing import Callable, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits

T = TypeVar("T")


def generate_id(prefix: str, *, size: int = 8) -> str:
    """Generate a short unique identifier with a readable prefix."""

    suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(size))
    return f"{prefix}_{suffix}"


def clamp(value: float, low: float, high: float):
    return max(low, min(high, value))


def to_percent(index: int, total: int) -> int:
    """Progress percentage after finishing item ``index`` of ``total``."""

    if total <= 0:
        return 0
    return int(clamp(round((index + 1) * 100 / total), 0, 100))


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class Signal(Generic[T]):
    """Minimal publish/subscribe stream for out-of-band notifications.

    Subscribers are plain callables; a failing subscriber is logged and does
    not prevent delivery to the others.
    """

    def __init__(self) -> None:
        self._subscribers: List[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, value: T) -> None:
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception:  # pragma: no cover - runtime safeguard
                logger.exception("Signal subscriber failed")


# ----------------------------------------------------------------------
# Network helpers
# ----------------------------------------------------------------------


def is_port_available(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("0.0.0.0", port))
        except OSError:
            return False
    return True


def get_available_port(preferred: int) -> int:
    if is_port_available(preferred):
        return preferred
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def local_ipv4() -> Optional[str]:
    """Best-effort LAN address of this machine; ``None`` when offline."""

    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            # UDP connect sends no packets; it only selects the outbound interface.
            sock.connect(("10.255.255.255", 1))
            address = sock.getsockname()[0]
        except OSError:
            return None
    if address.startswith("127."):
        return None
    return address
