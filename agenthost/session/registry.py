"""Owner of live terminal sessions."""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from agenthost.channel.base import BaseChannel, InteractiveShell
from agenthost.core.exceptions import SessionNotFoundError, SessionOwnershipError
from agenthost.session.buffer import OutputBuffer

log = logger.bind(component="sessions")


def owns(user_id: str, session_id: str) -> bool:
    return session_id.startswith(f"{user_id}-")


@dataclass(slots=True)
class Session:
    id: str
    user_id: str
    channel: BaseChannel
    buffer: OutputBuffer
    shell: InteractiveShell | None = None
    instance_id: str | None = None
    alive: bool = True

    async def close(self) -> None:
        self.alive = False
        await self.channel.close()
        self.buffer.clear()


@dataclass(slots=True)
class SessionRegistry:
    """Explicit session scope shared by SessionManager and OutputStreamer.

    Created once per server and closed on shutdown.
    """

    _sessions: dict[str, Session] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def add(self, session: Session) -> None:
        self._sessions[session.id] = session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def require(self, user_id: str, session_id: str) -> Session:
        """Look up a session the caller owns.

        Raises:
            SessionOwnershipError: ``session_id`` does not belong to ``user_id``.
            SessionNotFoundError: No such session.
        """
        if not owns(user_id, session_id):
            raise SessionOwnershipError(f"Session {session_id} does not belong to {user_id}")
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    def for_user(self, user_id: str) -> list[Session]:
        return [s for s in self._sessions.values() if s.user_id == user_id]

    def pop(self, session_id: str) -> Session | None:
        return self._sessions.pop(session_id, None)

    async def remove(self, session_id: str) -> bool:
        session = self.pop(session_id)
        if session is None:
            return False
        await session.close()
        log.bind(session_id=session_id).debug("Session removed")
        return True

    async def remove_user(self, user_id: str) -> int:
        sessions = [self.pop(s.id) for s in self.for_user(user_id)]
        for session in sessions:
            if session is not None:
                await session.close()
        return len(sessions)

    async def close(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()
        if sessions:
            log.info("Closed {n} terminal session(s)", n=len(sessions))
