"""
Connectivity monitor - online/offline state with edge-triggered callbacks.

The UI forwards the platform's online/offline events through
:meth:`ConnectivityMonitor.set_online`. When a probe host is configured, a
background task additionally checks reachability with a TCP connect and
feeds the result into the same edge detector. Callbacks fire once per
transition, never on repeated reports of the same state.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, List, Optional, Union

logger = logging.getLogger(__name__)

Callback = Callable[[], Union[None, Awaitable[None]]]


class ConnectivityMonitor:
    """Tracks network reachability and notifies on transitions."""

    def __init__(
        self,
        probe_host: str = "",
        probe_port: int = 443,
        check_interval: float = 30.0,
        probe_timeout: float = 5.0,
        initially_online: bool = False
    ):
        self.probe_host = probe_host
        self.probe_port = probe_port
        self.check_interval = check_interval
        self.probe_timeout = probe_timeout

        self._online = initially_online
        self._online_callbacks: List[Callback] = []
        self._offline_callbacks: List[Callback] = []
        self._task: Optional[asyncio.Task] = None

    def is_online(self) -> bool:
        return self._online

    def on_online(self, callback: Callback) -> None:
        """Register a callback fired on every offline -> online transition."""
        self._online_callbacks.append(callback)

    def on_offline(self, callback: Callback) -> None:
        """Register a callback fired on every online -> offline transition."""
        self._offline_callbacks.append(callback)

    async def set_online(self, online: bool) -> bool:
        """
        Report the current reachability.

        Args:
            online: Whether the network is reachable

        Returns:
            True if this report changed the state
        """
        if online == self._online:
            return False

        self._online = online
        logger.info(f"Device is now {'online' if online else 'offline'}")

        callbacks = self._online_callbacks if online else self._offline_callbacks
        for callback in list(callbacks):
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Connectivity callback {callback!r} failed: {e}", exc_info=True)

        return True

    async def probe(self) -> bool:
        """TCP connect to the probe host. Returns True if it answered in time."""
        if not self.probe_host:
            return self._online

        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.probe_host, self.probe_port),
                timeout=self.probe_timeout
            )
        except (OSError, asyncio.TimeoutError):
            return False

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    def start(self) -> None:
        """Start background probing if a probe host is configured."""
        if not self.probe_host or self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._monitor_loop())
        logger.info(
            f"ConnectivityMonitor probing {self.probe_host}:{self.probe_port} "
            f"every {self.check_interval:.0f}s"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _monitor_loop(self) -> None:
        while True:
            await self.set_online(await self.probe())
            await asyncio.sleep(self.check_interval)
