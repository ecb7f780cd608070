from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, FrozenSet, Iterable, List, Optional

from fastapi.responses import StreamingResponse

from .logging_config import get_logger
from .models import SSEEventType, SSEMessage, utc_now_iso

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

KEEPALIVE_FRAME = ":keepalive\n\n"


class TooManyClientsError(RuntimeError):
    """Raised when the registry is at its client cap."""


def parse_channels(raw: Optional[str]) -> FrozenSet[str]:
    """Parse a comma-separated ``channels`` query value.

    Anything unusable (missing, blank, only commas) means "all channels".
    """
    if not raw:
        return frozenset()
    return frozenset(c.strip() for c in raw.split(",") if c.strip())


def new_client_id() -> str:
    return uuid.uuid4().hex


def format_sse(message: SSEMessage) -> str:
    return f"data: {message.to_json()}\n\n"


@dataclass
class ClientRegistration:
    client_id: str
    channels: FrozenSet[str]
    queue: "asyncio.Queue[Optional[str]]"
    connected_at: float = field(default_factory=time.monotonic)
    last_drained_at: float = field(default_factory=time.monotonic)

    def wants(self, channel: Optional[str]) -> bool:
        # Channel-less events (ping) go to everyone
        return channel is None or not self.channels or channel in self.channels


class Broadcaster:
    """In-memory channel pub/sub for SSE clients.

    Every client owns a bounded queue drained by its own writer (the SSE
    response generator). Publishing never awaits: a client whose queue is
    full is considered stalled and is dropped so it cannot hold up fanout
    to the others. Delivery is best-effort and at-most-once.
    """

    def __init__(
        self,
        queue_size: int = 100,
        max_clients: int = 1000,
        ping_interval: float = 30.0,
        keepalive_interval: float = 15.0,
        idle_timeout: float = 120.0,
    ):
        self._clients: Dict[str, ClientRegistration] = {}
        self._queue_size = queue_size
        self._max_clients = max_clients
        self._ping_interval = ping_interval
        self._keepalive_interval = keepalive_interval
        self._idle_timeout = idle_timeout
        self._heartbeat: Optional[asyncio.Task] = None

    # -- registry -----------------------------------------------------------

    def add_client(self, client_id: str, channels: Iterable[str] = ()) -> ClientRegistration:
        previous = self._clients.get(client_id)
        if previous is not None:
            logger.warning(f"SSE client id collision, replacing registration: {client_id}")
            self._close(previous)
        elif len(self._clients) >= self._max_clients:
            raise TooManyClientsError(f"client limit reached ({self._max_clients})")

        reg = ClientRegistration(
            client_id=client_id,
            channels=frozenset(channels),
            queue=asyncio.Queue(maxsize=self._queue_size),
        )
        self._clients[client_id] = reg
        logger.info(
            f"SSE client connected: {client_id} "
            f"(channels: {', '.join(sorted(reg.channels)) or 'all'}, total: {len(self._clients)})"
        )

        hello = SSEMessage(
            type=SSEEventType.CONNECTION_ESTABLISHED,
            data={"clientId": client_id, "channels": sorted(reg.channels)},
        )
        self._deliver(reg, format_sse(hello))
        return reg

    def remove_client(self, client_id: str, registration: Optional[ClientRegistration] = None) -> bool:
        """Deregister a client. Unknown ids are ignored.

        When ``registration`` is given, only that exact registration is
        removed; a newer one that reused the id is left alone.
        """
        reg = self._clients.get(client_id)
        if reg is None or (registration is not None and reg is not registration):
            return False
        del self._clients[client_id]
        self._close(reg)
        logger.info(f"SSE client disconnected: {client_id} (total: {len(self._clients)})")
        return True

    def get_client(self, client_id: str) -> Optional[ClientRegistration]:
        return self._clients.get(client_id)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def stats(self) -> Dict[str, object]:
        channel_counts: Dict[str, int] = {}
        for reg in self._clients.values():
            names = reg.channels or ("*",)
            for name in names:
                channel_counts[name] = channel_counts.get(name, 0) + 1
        return {"totalClients": len(self._clients), "channelCounts": channel_counts}

    # -- publishing ---------------------------------------------------------

    def publish(self, message: SSEMessage) -> int:
        frame = format_sse(message)
        delivered = 0
        # Snapshot: failing clients are removed while we iterate
        for reg in list(self._clients.values()):
            if not reg.wants(message.channel):
                continue
            if self._deliver(reg, frame):
                delivered += 1

        if message.type is SSEEventType.PING:
            logger.debug(f"Ping sent to {delivered} client(s)")
        elif delivered:
            where = f" in channel: {message.channel}" if message.channel else ""
            logger.info(f"Broadcast {message.type.value} to {delivered} client(s){where}")
        return delivered

    def broadcast(self, event_type: SSEEventType, data: object, channel: Optional[str] = None) -> int:
        return self.publish(SSEMessage(type=event_type, channel=channel, data=data))

    def ping(self) -> int:
        return self.broadcast(SSEEventType.PING, {"time": utc_now_iso()})

    def _deliver(self, reg: ClientRegistration, frame: str) -> bool:
        try:
            reg.queue.put_nowait(frame)
            return True
        except asyncio.QueueFull:
            logger.warning(f"Dropping stalled SSE client {reg.client_id}: outbound queue full")
        except Exception:
            logger.exception(f"Failed to send to SSE client {reg.client_id}")
        self.remove_client(reg.client_id, registration=reg)
        return False

    @staticmethod
    def _close(reg: ClientRegistration) -> None:
        # Pending frames are discarded so the sentinel always fits
        while True:
            try:
                reg.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        reg.queue.put_nowait(None)

    # -- writer side --------------------------------------------------------

    async def drain(self, reg: ClientRegistration) -> AsyncIterator[str]:
        """Yield frames for one client until it is removed."""
        while True:
            try:
                frame = await asyncio.wait_for(reg.queue.get(), timeout=self._keepalive_interval)
            except asyncio.TimeoutError:
                reg.last_drained_at = time.monotonic()
                yield KEEPALIVE_FRAME
                continue
            reg.last_drained_at = time.monotonic()
            if frame is None:
                return
            yield frame

    def sweep_idle(self, now: Optional[float] = None) -> List[str]:
        """Drop clients with undelivered frames whose writer stopped draining."""
        now = time.monotonic() if now is None else now
        stale = [
            reg for reg in list(self._clients.values())
            if not reg.queue.empty() and now - reg.last_drained_at > self._idle_timeout
        ]
        for reg in stale:
            logger.warning(f"Dropping idle SSE client {reg.client_id}")
            self.remove_client(reg.client_id, registration=reg)
        return [reg.client_id for reg in stale]

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        if self._heartbeat is None:
            self._heartbeat = asyncio.create_task(self._run_heartbeat(), name="sse-heartbeat")

    async def _run_heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._ping_interval)
            try:
                self.sweep_idle()
                self.ping()
            except Exception:
                logger.exception("SSE heartbeat tick failed")

    async def close(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._heartbeat
            self._heartbeat = None
        for client_id in list(self._clients):
            self.remove_client(client_id)


def sse_response(broadcaster: Broadcaster, channels: Optional[str]) -> StreamingResponse:
    """Register a new client and stream its queue as text/event-stream.

    Raises TooManyClientsError when the registry is full.
    """
    reg = broadcaster.add_client(new_client_id(), parse_channels(channels))

    async def gen():
        try:
            async for frame in broadcaster.drain(reg):
                yield frame
        finally:
            # Runs on disconnect and cancellation, not only on clean close
            broadcaster.remove_client(reg.client_id, registration=reg)

    return StreamingResponse(gen(), media_type="text/event-stream", headers=SSE_HEADERS)
