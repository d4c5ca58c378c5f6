"""Progress channel fan-out.

Channels are named ``processing:<recordingId>`` (transform and voice
progress) and ``export:<jobId>`` (export progress). Members join and leave
explicitly; a broadcast reaches only the members present at that moment.
There is no buffering or replay for late joiners.

Two kinds of members are supported:
- websocket-like objects with ``async send_json(dict)`` (joined via ``join``)
- in-process consumers iterating ``subscribe(channel)``
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

logger = logging.getLogger(__name__)

PROCESSING_EVENT = "processing-progress"
EXPORT_EVENT = "export-progress"


def processing_channel(recording_id: str) -> str:
    return f"processing:{recording_id}"


def export_channel(job_id: str) -> str:
    return f"export:{job_id}"


class ChannelMember(Protocol):
    async def send_json(self, data: Any) -> None: ...


@dataclass
class ChannelEvent:
    """A message broadcast on a channel."""

    channel: str
    event: str  # processing-progress | export-progress
    data: dict[str, Any]
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_message(self) -> dict[str, Any]:
        return {"channel": self.channel, "event": self.event, "data": self.data}


class ProgressHub:
    """Manages channel membership and broadcasts progress messages."""

    def __init__(self, send_timeout_s: float = 1.0) -> None:
        # Per-member send deadline; slower members are dropped
        self._send_timeout_s = send_timeout_s
        # channel -> joined members (websockets)
        self._members: dict[str, list[ChannelMember]] = defaultdict(list)
        # channel -> in-process subscriber queues
        self._subscribers: dict[str, set[asyncio.Queue[ChannelEvent]]] = defaultdict(set)

    def join(self, channel: str, member: ChannelMember) -> None:
        """Add a member to a channel. Joining twice is a no-op."""
        if member not in self._members[channel]:
            self._members[channel].append(member)
            logger.debug(f"Member joined {channel}. Total: {len(self._members[channel])}")

    def leave(self, channel: str, member: ChannelMember) -> None:
        """Remove a member from a channel."""
        members = self._members.get(channel)
        if not members:
            return
        if member in members:
            members.remove(member)
        # Clean up empty lists
        if not members:
            del self._members[channel]

    def leave_all(self, member: ChannelMember) -> None:
        """Remove a member from every channel it joined."""
        for channel in list(self._members):
            self.leave(channel, member)

    async def broadcast(self, channel: str, event: str, data: dict[str, Any]) -> int:
        """Send a message to all current members of a channel.

        Returns:
            Number of members and subscribers notified
        """
        message = ChannelEvent(channel=channel, event=event, data=data)
        notified = 0

        members = list(self._members.get(channel, []))
        if members:
            payload = message.to_message()
            results = await asyncio.gather(
                *(asyncio.wait_for(m.send_json(payload), self._send_timeout_s) for m in members),
                return_exceptions=True,
            )
            disconnected = []
            for member, result in zip(members, results):
                if isinstance(result, BaseException):
                    # Client disconnected or stalled
                    logger.debug(f"Dropping member of {channel}: {result!r}")
                    disconnected.append(member)
                else:
                    notified += 1
            for member in disconnected:
                self.leave(channel, member)

        for queue in list(self._subscribers.get(channel, set())):
            try:
                queue.put_nowait(message)
                notified += 1
            except asyncio.QueueFull:
                logger.warning(f"Queue full for subscriber of {channel}")

        return notified

    async def subscribe(self, channel: str) -> AsyncGenerator[ChannelEvent, None]:
        """Yield events broadcast on ``channel`` after the call starts iterating."""
        queue: asyncio.Queue[ChannelEvent] = asyncio.Queue()
        self._subscribers[channel].add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers[channel].discard(queue)
            if not self._subscribers[channel]:
                del self._subscribers[channel]

    def member_count(self, channel: str) -> int:
        return len(self._members.get(channel, [])) + len(self._subscribers.get(channel, set()))
