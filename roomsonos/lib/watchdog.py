# RoomOS Sonos Control
# SPDX-License-Identifier: GPL-3.0-or-later

"""Systemd watchdog heartbeat for the service.

READY=1 is sent once, then WATCHDOG=1 at regular intervals for as long as
the health check passes.  A stalled device connection therefore lets systemd
restart the unit.  Silently no-ops when NOTIFY_SOCKET is unset (dev mode).
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger("roomos-sonos.watchdog")


def sd_notify(msg: str) -> bool:
    """Send a notification message to the systemd notify socket."""
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return False
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
    finally:
        sock.close()
    return True


async def watchdog_loop(interval: int = 20, healthy=None):
    """Pet the watchdog every *interval* seconds while *healthy()* is true."""
    sd_notify("READY=1")
    logger.info("Watchdog started (interval=%ds)", interval)
    missed = 0
    while True:
        if healthy is None or healthy():
            sd_notify("WATCHDOG=1")
            missed = 0
        else:
            missed += 1
            if missed == 1:
                logger.warning("Device connection unhealthy — withholding watchdog ping")
        await asyncio.sleep(interval)
