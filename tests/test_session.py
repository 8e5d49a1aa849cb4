"""
Tests for session state, the fixed-window segmenter and the session registry.
"""

import pytest

from src.relay.history import ConversationHistory
from src.relay.registry import SessionRegistry
from src.relay.segmenter import AudioSegmenter
from src.relay.session import MuteKind, MuteWindow, Session, TurnMetrics, TurnState


def make_session(connection_id="conn_1"):
    return Session(connection_id=connection_id, stream_sid="MZ1", history=ConversationHistory("p"))


class TestMuteWindow:

    def test_open(self):
        assert not MuteWindow.open().is_muted(0.0)

    def test_until(self):
        window = MuteWindow.until_time(10.0)

        assert window.kind == MuteKind.UNTIL
        assert window.is_muted(9.99)
        assert not window.is_muted(10.0)

    def test_indefinite(self):
        window = MuteWindow.indefinite()

        assert window.is_muted(1e12)
        assert window.awaiting_playback
        assert not MuteWindow.until_time(5.0).awaiting_playback


class TestSession:

    def test_defaults(self):
        session = make_session()

        assert session.state == TurnState.GREETING
        assert session.audio_buffer == []
        assert not session.pipeline_busy

    def test_mark_names_are_unique(self):
        session = make_session()

        assert session.next_mark_name("reply") == "reply_1"
        assert session.next_mark_name("reply") == "reply_2"

    def test_release(self):
        session = make_session()
        session.audio_buffer.append(b"\xff" * 160)
        session.pending_mark = "reply_1"

        session.release()

        assert session.closed
        assert session.state == TurnState.STOPPED
        assert session.audio_buffer == []
        assert session.pending_mark is None

    def test_turn_metrics_finalize(self):
        metrics = TurnMetrics(turn_id=1, start_time=1.0)
        metrics.finalize("dropped", "transcribe")

        assert metrics.outcome == "dropped"
        assert metrics.failed_stage == "transcribe"
        assert metrics.total_turn_ms > 0


class TestAudioSegmenter:

    def test_threshold(self):
        segmenter = AudioSegmenter(threshold=3)
        session = make_session()

        segmenter.accumulate(session, b"a")
        segmenter.accumulate(session, b"b")
        assert not segmenter.is_utterance_ready(session)

        segmenter.accumulate(session, b"c")
        assert segmenter.is_utterance_ready(session)
        assert segmenter.buffered_frames(session) == 3

    def test_flush_preserves_order_and_empties(self):
        segmenter = AudioSegmenter(threshold=2)
        session = make_session()
        segmenter.accumulate(session, b"1")
        segmenter.accumulate(session, b"2")

        assert segmenter.flush(session) == [b"1", b"2"]
        assert session.audio_buffer == []
        assert not segmenter.is_utterance_ready(session)

    def test_window_ms(self):
        assert AudioSegmenter().window_ms == 1200

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            AudioSegmenter(threshold=0)


class TestSessionRegistry:

    def test_open_and_get(self):
        registry = SessionRegistry()
        session = registry.open("conn_1", "MZ1", ConversationHistory("p"), call_sid="CA1")

        assert registry.get("conn_1") is session
        assert "conn_1" in registry
        assert len(registry) == 1
        assert session.metrics.call_sid == "CA1"

    def test_duplicate_open(self):
        registry = SessionRegistry()
        registry.open("conn_1", "MZ1", ConversationHistory("p"))

        with pytest.raises(ValueError):
            registry.open("conn_1", "MZ2", ConversationHistory("p"))

    def test_close_is_idempotent(self):
        registry = SessionRegistry()
        session = registry.open("conn_1", "MZ1", ConversationHistory("p"))

        assert registry.close("conn_1") is session
        assert session.closed
        assert registry.close("conn_1") is None
        assert registry.get("conn_1") is None
        assert len(registry) == 0

    def test_sessions_are_isolated(self):
        registry = SessionRegistry()
        a = registry.open("conn_a", "MZa", ConversationHistory("p"))
        b = registry.open("conn_b", "MZb", ConversationHistory("p"))
        a.audio_buffer.append(b"x")

        registry.close("conn_a")

        assert b.audio_buffer == []
        assert not b.closed
        assert registry.get("conn_b") is b
        assert len(registry) == 1
