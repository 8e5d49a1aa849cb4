"""
Process-wide registry of live sessions, keyed by connection id.

All access happens on the event loop and every operation is a single dict
call with no await inside, so open/close/lookup never interleave.
"""

from typing import Dict, Optional

import structlog

from src.relay.history import ConversationHistory
from src.relay.session import Session

logger = structlog.get_logger(__name__)


class SessionRegistry:
    """Maps connection identity to session state."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def open(
        self,
        connection_id: str,
        stream_sid: str,
        history: ConversationHistory,
        *,
        call_sid: str = "",
    ) -> Session:
        """
        Create the session for a connection.

        Raises:
            ValueError: If the connection already has a live session
        """
        if connection_id in self._sessions:
            raise ValueError(f"Session already open for connection {connection_id}")

        session = Session(
            connection_id=connection_id,
            stream_sid=stream_sid,
            call_sid=call_sid,
            history=history,
        )
        session.metrics.stream_sid = stream_sid
        session.metrics.call_sid = call_sid
        self._sessions[connection_id] = session
        logger.debug("Session opened", connection_id=connection_id, stream_sid=stream_sid)
        return session

    def get(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def close(self, connection_id: str) -> Optional[Session]:
        """
        Remove and release a session.

        Idempotent: closing an unknown or already-closed connection returns None.
        """
        session = self._sessions.pop(connection_id, None)
        if session is None:
            return None
        session.release()
        logger.debug("Session closed", connection_id=connection_id, stream_sid=session.stream_sid)
        return session

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
