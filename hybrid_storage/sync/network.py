"""
Network connectivity monitoring.

The monitor owns the process-wide connectivity state and notifies
subscribers once per transition edge. State changes come from two
sources:

- report(): a platform-supplied signal (OS network events, a UI toggle);
  applied immediately
- a polling loop running a ConnectivityProbe; a new state must be seen
  on ``debounce`` consecutive samples before it becomes a transition

The status is seeded from an immediate probe when the monitor starts.
Subscribers are called inline and must hand slow work off (e.g. with
asyncio.create_task) rather than block the detection loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)


class ConnectivityState(Enum):
    """Connectivity as seen by this process."""

    ONLINE = "online"
    OFFLINE = "offline"

    @classmethod
    def from_bool(cls, online: bool) -> ConnectivityState:
        return cls.ONLINE if online else cls.OFFLINE


ConnectivityProbe = Callable[[], Awaitable[bool]]
TransitionHandler = Callable[[ConnectivityState], None]


class TcpProbe:
    """Probe that opens a TCP connection to the remote API host."""

    def __init__(self, host: str, port: int, timeout: float = 3.0):
        self.host = host
        self.port = port
        self.timeout = timeout

    @classmethod
    def for_url(cls, url: str, timeout: float = 3.0) -> TcpProbe:
        """Build a probe for the host and port of an API base URL."""
        parts = urlsplit(url)
        if not parts.hostname:
            raise ValueError(f"Cannot probe URL without a host: {url!r}")
        port = parts.port or (443 if parts.scheme == "https" else 80)
        return cls(parts.hostname, port, timeout)

    async def __call__(self) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.timeout
            )
        except (OSError, TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True


async def always_online() -> bool:
    """Probe for setups without a way to detect connectivity."""
    return True


class NetworkMonitor:
    """Tracks connectivity and emits transition events.

    Example:
        >>> monitor = NetworkMonitor(TcpProbe.for_url(api_url), poll_interval=5.0)
        >>> unsubscribe = monitor.subscribe(lambda state: print(state))
        >>> await monitor.start()
        >>> monitor.current_status()
        <ConnectivityState.ONLINE: 'online'>
    """

    def __init__(
        self,
        probe: ConnectivityProbe | None = None,
        poll_interval: float = 0.0,
        debounce: int = 2,
        initial: ConnectivityState = ConnectivityState.OFFLINE,
    ) -> None:
        """Initialize the monitor.

        Args:
            probe: Async callable returning True when the remote side is reachable
            poll_interval: Seconds between probes; 0 disables the polling loop
            debounce: Consecutive identical samples required before a polled
                transition is emitted
            initial: Status before the first probe or report
        """
        if debounce < 1:
            raise ValueError("debounce must be at least 1")
        self.probe = probe or always_online
        self.poll_interval = poll_interval
        self.debounce = debounce

        self._status = initial
        self._handlers: list[TransitionHandler] = []
        self._candidate: ConnectivityState | None = None
        self._candidate_count = 0
        self._poll_task: asyncio.Task[None] | None = None
        self._running = False

    def current_status(self) -> ConnectivityState:
        return self._status

    @property
    def is_online(self) -> bool:
        return self._status is ConnectivityState.ONLINE

    def subscribe(self, handler: TransitionHandler) -> Callable[[], None]:
        """Register a transition handler.

        Returns:
            A function that removes the handler
        """
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def start(self) -> None:
        """Seed the status from an immediate probe and start polling."""
        if self._running:
            return
        self._running = True

        self._set_status(await self._safe_probe())
        logger.info(f"Network monitor started: {self._status.value}")

        if self.poll_interval > 0:
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        """Stop polling. Subscriptions are kept."""
        self._running = False
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        logger.info("Network monitor stopped")

    def report(self, online: bool) -> None:
        """Apply a platform-supplied connectivity signal."""
        self._reset_candidate()
        self._set_status(ConnectivityState.from_bool(online))

    async def check_now(self) -> ConnectivityState:
        """Probe once and apply the result immediately."""
        self._reset_candidate()
        self._set_status(await self._safe_probe())
        return self._status

    async def sample(self) -> ConnectivityState:
        """Probe once and feed the result through the debounce filter."""
        observed = await self._safe_probe()
        if observed is self._status:
            self._reset_candidate()
            return self._status

        if observed is self._candidate:
            self._candidate_count += 1
        else:
            self._candidate = observed
            self._candidate_count = 1

        if self._candidate_count >= self.debounce:
            self._reset_candidate()
            self._set_status(observed)
        return self._status

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.poll_interval)
                await self.sample()
            except asyncio.CancelledError:
                break

    async def _safe_probe(self) -> ConnectivityState:
        try:
            return ConnectivityState.from_bool(bool(await self.probe()))
        except Exception as e:
            logger.warning(f"Connectivity probe failed: {e}")
            return ConnectivityState.OFFLINE

    def _reset_candidate(self) -> None:
        self._candidate = None
        self._candidate_count = 0

    def _set_status(self, status: ConnectivityState) -> None:
        if status is self._status:
            return
        previous, self._status = self._status, status
        logger.info(f"Connectivity changed: {previous.value} -> {status.value}")

        for handler in list(self._handlers):
            try:
                handler(status)
            except Exception:
                logger.exception("Connectivity handler failed")
