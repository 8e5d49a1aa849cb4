"""
Per-call session state.

One `Session` holds the buffer, mute window, history and stream id for a
connection; the registry owns it and the turn controller is its only writer.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from src.relay.history import ConversationHistory


class TurnState(str, Enum):
    """Where a call is in the turn-taking cycle."""
    AWAITING_START = "awaiting_start"
    GREETING = "greeting"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    COOLDOWN = "cooldown"
    STOPPED = "stopped"


class MuteKind(str, Enum):
    OPEN = "open"
    UNTIL = "until"
    INDEFINITE = "indefinite"


@dataclass(frozen=True)
class MuteWindow:
    """
    Whether inbound audio is currently accepted.

    OPEN accepts audio, UNTIL drops it until a monotonic deadline, INDEFINITE
    drops it until playback is acknowledged.
    """
    kind: MuteKind = MuteKind.OPEN
    until: float = 0.0

    @classmethod
    def open(cls) -> "MuteWindow":
        return cls(MuteKind.OPEN)

    @classmethod
    def until_time(cls, deadline: float) -> "MuteWindow":
        return cls(MuteKind.UNTIL, deadline)

    @classmethod
    def indefinite(cls) -> "MuteWindow":
        return cls(MuteKind.INDEFINITE)

    def is_muted(self, now: float) -> bool:
        if self.kind == MuteKind.INDEFINITE:
            return True
        if self.kind == MuteKind.UNTIL:
            return now < self.until
        return False

    @property
    def awaiting_playback(self) -> bool:
        return self.kind == MuteKind.INDEFINITE


@dataclass
class TurnMetrics:
    """Metrics for a single conversation turn."""
    turn_id: int = 0
    start_time: float = 0.0
    frames: int = 0
    transcode_in_ms: float = 0.0
    stt_ms: float = 0.0
    llm_ms: float = 0.0
    tts_ms: float = 0.0
    transcode_out_ms: float = 0.0
    total_turn_ms: float = 0.0
    outcome: str = ""
    failed_stage: str = ""

    def finalize(self, outcome: str, failed_stage: str = "") -> None:
        """Calculate total turn time and record how the turn ended."""
        self.outcome = outcome
        self.failed_stage = failed_stage
        if self.start_time > 0:
            self.total_turn_ms = (time.time() - self.start_time) * 1000


@dataclass
class CallMetrics:
    """Metrics for an entire call."""
    call_sid: str = ""
    stream_sid: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    turns: List[TurnMetrics] = field(default_factory=list)
    frames_received: int = 0
    frames_dropped: int = 0
    fallback_tones: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_sid": self.call_sid,
            "stream_sid": self.stream_sid,
            "duration_seconds": round(self.duration_seconds, 2),
            "total_turns": len(self.turns),
            "spoken_turns": sum(1 for t in self.turns if t.outcome == "spoken"),
            "frames_received": self.frames_received,
            "frames_dropped": self.frames_dropped,
            "fallback_tones": self.fallback_tones,
            "avg_turn_ms": round(
                sum(t.total_turn_ms for t in self.turns) / len(self.turns), 2
            ) if self.turns else 0,
        }


@dataclass
class Session:
    """State for one active call."""
    connection_id: str
    stream_sid: str
    history: ConversationHistory
    call_sid: str = ""
    state: TurnState = TurnState.GREETING
    audio_buffer: List[bytes] = field(default_factory=list)
    mute: MuteWindow = field(default_factory=MuteWindow.open)
    pipeline_task: Optional[asyncio.Task] = None
    closed: bool = False
    turn_counter: int = 0
    mark_counter: int = 0
    pending_mark: Optional[str] = None
    metrics: CallMetrics = field(default_factory=CallMetrics)

    @property
    def pipeline_busy(self) -> bool:
        return self.pipeline_task is not None and not self.pipeline_task.done()

    def next_mark_name(self, label: str) -> str:
        self.mark_counter += 1
        return f"{label}_{self.mark_counter}"

    def release(self) -> None:
        """Drop buffered audio and mark the session dead."""
        self.closed = True
        self.state = TurnState.STOPPED
        self.audio_buffer.clear()
        self.pending_mark = None
