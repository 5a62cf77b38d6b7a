"""Pull-based streaming of a session's buffered output.

Each consumer keeps its own cursor into the session's OutputBuffer and polls
it adaptively: quickly while output is flowing, slowly once the shell has been
quiet for a few polls. Pending entries go out in batches so a burst of output
costs one message instead of hundreds.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable

from agenthost.config import StreamSettings
from agenthost.session.buffer import Chunk
from agenthost.session.registry import SessionRegistry

CONNECTED = json.dumps({"type": "connected"})
ENDED = json.dumps({"type": "system", "data": "Session ended\r\n"})

_BATCH_OPEN = '{"type": "batch", "outputs": ['
_BATCH_CLOSE = "]}"
_SEPARATOR = ", "


def encode_batch(chunks: list[Chunk]) -> str:
    """One chunk goes out as itself; several are wrapped in a batch message."""
    if len(chunks) == 1:
        return chunks[0].data
    return _BATCH_OPEN + _SEPARATOR.join(c.data for c in chunks) + _BATCH_CLOSE


def take_batch(chunks: list[Chunk], max_chunks: int, max_bytes: int) -> list[Chunk]:
    """Leading chunks whose encoded message, wrapper included, fits in ``max_bytes``.

    The first chunk is always taken.
    """
    batch: list[Chunk] = []
    size = len(_BATCH_OPEN) + len(_BATCH_CLOSE)
    for chunk in chunks[:max_chunks]:
        added = chunk.size + (len(_SEPARATOR) if batch else 0)
        if batch and size + added > max_bytes:
            break
        batch.append(chunk)
        size += added
    return batch


class OutputStreamer:
    def __init__(
        self,
        registry: SessionRegistry,
        settings: StreamSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.settings = settings or StreamSettings()
        self._sleep = sleep

    def stream(self, user_id: str, session_id: str) -> AsyncIterator[str]:
        """Validate ownership now, then return the message iterator.

        Raises:
            SessionOwnershipError: The session belongs to someone else.
            SessionNotFoundError: No such session.
        """
        session = self.registry.require(user_id, session_id)
        return self._messages(session_id, session.buffer.first_index)

    async def _messages(self, session_id: str, cursor: int) -> AsyncIterator[str]:
        s = self.settings
        empty_polls = 0
        yield CONNECTED

        while True:
            session = self.registry.get(session_id)
            if session is None:
                yield ENDED
                return

            pending = session.buffer.read_from(cursor, limit=s.max_batch_chunks)
            batch = take_batch(pending, s.max_batch_chunks, s.max_batch_bytes)
            if batch:
                cursor = batch[-1].index + 1
                empty_polls = 0
                yield encode_batch(batch)
            elif not session.alive:
                yield ENDED
                return
            else:
                empty_polls += 1

            await self._sleep(s.idle_interval if empty_polls >= s.idle_after else s.active_interval)
