"""Confirm that a started application is accepting connections."""
from __future__ import annotations

import logging
import socket
import time

from .errors import StartTimeoutError

LOGGER = logging.getLogger(__name__)

LOG_SUGGESTION = "Check the Ghost logs in content/logs for the cause."


class _Retry(Exception):
    """Internal signal that another polling attempt is warranted."""


def wait_for_port(
    host: str,
    port: int,
    *,
    max_tries: int = 20,
    retry_interval: float = 2.0,
    socket_timeout: float = 60.0,
    delay_on_connect: float = 6.0,
) -> None:
    """Poll ``host:port`` until a connection survives *delay_on_connect* seconds.

    ``0.0.0.0`` means "listen everywhere" and is polled through ``localhost``.
    Raises :class:`StartTimeoutError` once *max_tries* retries are exhausted.
    """
    target_host = host if host and host != "0.0.0.0" else "localhost"  # noqa: S104
    tries = 0
    while True:
        try:
            _probe(target_host, port, socket_timeout=socket_timeout, delay=delay_on_connect)
            LOGGER.debug("%s:%s is accepting connections", target_host, port)
            return
        except _Retry as exc:
            if tries >= max_tries:
                raise StartTimeoutError(
                    "Ghost did not start.",
                    help=f"Last error: {exc}",
                    suggestion=LOG_SUGGESTION,
                ) from exc
            tries += 1
            LOGGER.debug("Liveness attempt %s failed: %s", tries, exc)
            time.sleep(retry_interval)


def _probe(host: str, port: int, *, socket_timeout: float, delay: float) -> None:
    try:
        conn = socket.create_connection((host, port), timeout=socket_timeout)
    except OSError as exc:
        raise _Retry(str(exc) or type(exc).__name__) from exc

    with conn:
        if delay <= 0:
            return
        time.sleep(delay)
        conn.setblocking(False)
        try:
            data = conn.recv(1, socket.MSG_PEEK)
        except BlockingIOError:
            return
        except OSError as exc:
            raise _Retry("Ghost died.") from exc
        if data == b"":
            raise _Retry("Ghost died.")


__all__ = ["LOG_SUGGESTION", "wait_for_port"]
