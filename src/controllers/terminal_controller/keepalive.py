"""
Keepalive

Pings the terminal WebSocket on a fixed interval so a silent peer is
noticed. The matching read deadline lives on the WebSocketResponse
(receive_timeout) and is reset by every inbound frame, pongs included.
"""

import asyncio
from typing import Optional
from tools.logger import log_debug, log_error

# Interval between keep-alive pings (seconds)
PING_INTERVAL = 30
# Read deadline, reset by any inbound frame (seconds)
PONG_WAIT = 60


class Keepalive:

    def __init__(self, ws, write_lock: asyncio.Lock, interval: float = PING_INTERVAL):
        self._ws = ws
        self._write_lock = write_lock
        self._interval = interval
        self._ping_task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._ping_task is None:
            self._ping_task = asyncio.create_task(self._ping_loop())

    async def stop(self) -> None:
        if self._ping_task is None:
            return
        self._ping_task.cancel()
        try:
            await self._ping_task
        except asyncio.CancelledError:
            pass
        self._ping_task = None

    async def _ping_loop(self) -> None:
        """Send periodic pings until the socket closes or the task is cancelled."""
        while True:
            await asyncio.sleep(self._interval)
            try:
                async with self._write_lock:
                    if self._ws.closed:
                        return
                    await self._ws.ping()
                log_debug("Sent terminal WebSocket ping")
            except (ConnectionError, RuntimeError) as e:
                log_debug(f"Ping failed, connection likely closed: {e}")
                return
            except Exception as e:
                log_error(f"Error in terminal ping loop: {e}")
                return
