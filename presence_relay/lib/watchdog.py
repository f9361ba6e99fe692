"""Systemd notify heartbeat, used as the producer's keep-alive signal.

Sends WATCHDOG=1 to the systemd notify socket at regular intervals so an
idle producer is not considered hung and restarted or suspended.
Silently no-ops when NOTIFY_SOCKET is unset (macOS / dev mode).

Usage:
    from .watchdog import keepalive_loop
    asyncio.create_task(keepalive_loop(30))
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)


def sd_notify(msg: str):
    """Send a notification message to the systemd notify socket."""
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
    finally:
        sock.close()


async def keepalive_loop(interval: float = 30, send=sd_notify):
    """Emit WATCHDOG=1 every *interval* seconds until cancelled.

    Failures to emit are ignored; the loop keeps running regardless of
    link state.
    """
    logger.debug("Keep-alive started (interval=%ss)", interval)
    while True:
        try:
            send("WATCHDOG=1")
        except Exception as e:
            logger.debug("Keep-alive signal failed: %s", e)
        await asyncio.sleep(interval)


async def watchdog_loop(interval: int = 20):
    """Send READY=1 once, then WATCHDOG=1 every *interval* seconds.

    Used by the relay, which has no link-independent keep-alive of its own.
    """
    sd_notify("READY=1")
    logger.info("Watchdog started (interval=%ds)", interval)
    await keepalive_loop(interval)
