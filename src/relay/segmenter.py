"""
Fixed-window audio segmentation.

Inbound 20ms frames are buffered per session; once the buffer holds
`threshold` frames the window is treated as one utterance. There is no voice
activity detection: the threshold alone sets the turn-taking cadence.
"""

from typing import List

from src.relay.audio import FRAME_DURATION_MS
from src.relay.session import Session

DEFAULT_UTTERANCE_FRAMES = 60


class AudioSegmenter:
    """Accumulates frames and signals when a window is full."""

    def __init__(self, threshold: int = DEFAULT_UTTERANCE_FRAMES, frame_duration_ms: int = FRAME_DURATION_MS):
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        self.threshold = threshold
        self.frame_duration_ms = frame_duration_ms

    @property
    def window_ms(self) -> int:
        return self.threshold * self.frame_duration_ms

    def accumulate(self, session: Session, frame: bytes) -> None:
        session.audio_buffer.append(frame)

    def buffered_frames(self, session: Session) -> int:
        return len(session.audio_buffer)

    def is_utterance_ready(self, session: Session) -> bool:
        return len(session.audio_buffer) >= self.threshold

    def flush(self, session: Session) -> List[bytes]:
        """Drain the buffer and return its frames in arrival order."""
        frames = session.audio_buffer
        session.audio_buffer = []
        return frames
