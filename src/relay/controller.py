"""Per-call turn controller.

Drives one call end-to-end:
inbound Twilio mu-law -> fixed-window segmenter -> WAV -> STT -> chat model
(with bounded history) -> TTS -> mu-law -> Twilio media + mark

Turn-taking:
- GREETING on stream start, then LISTENING
- a full segment window starts exactly one PROCESSING run
- inbound audio is dropped while processing, while speaking (until Twilio
  acknowledges the playback mark) and during a short cooldown after it
- any stage failure drops the turn; synthesis failures play a fallback tone
- stop/disconnect cancels the in-flight run and discards its result
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import structlog

from src.relay.audio import AudioCodec, get_audio_duration_ms
from src.relay.config import Config, get_config
from src.relay.errors import EmptyTranscript, ProviderError, RelayError, TranscodeError
from src.relay.history import ConversationHistory
from src.relay.llm import ChatLLM, get_system_prompt
from src.relay.registry import SessionRegistry
from src.relay.segmenter import AudioSegmenter
from src.relay.session import MuteKind, MuteWindow, Session, TurnMetrics, TurnState
from src.relay.stt import WhisperSTT
from src.relay.tts import ElevenLabsTTS
from src.relay.twilio_protocol import (
    TwilioEventType,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioStartEvent,
    create_mark_message,
    create_media_message,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class TurnStage(str, Enum):
    """Suspension points of a turn, in order."""
    TRANSCODE_IN = "transcode_in"
    TRANSCRIBE = "transcribe"
    REPLY = "reply"
    SYNTHESIZE = "synthesize"
    TRANSCODE_OUT = "transcode_out"


@dataclass
class StageOutcome(Generic[T]):
    """Result of one stage: a value or the typed failure that stopped it."""
    stage: TurnStage
    value: Optional[T] = None
    error: Optional[RelayError] = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


_TRANSCODE_STAGES = (TurnStage.TRANSCODE_IN, TurnStage.TRANSCODE_OUT)


class TurnController:
    """
    State machine for one Twilio media stream.

    Events are handled in arrival order by the WebSocket receive loop; the
    greeting and each turn run in a background task so `stop` is never
    blocked behind a slow provider.
    """

    def __init__(
        self,
        connection_id: str,
        send_message: Callable[[str], Awaitable[None]],
        registry: SessionRegistry,
        config: Optional[Config] = None,
        *,
        stt: Optional[Any] = None,
        llm: Optional[Any] = None,
        tts: Optional[Any] = None,
        codec: Optional[AudioCodec] = None,
        segmenter: Optional[AudioSegmenter] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the controller.

        Args:
            connection_id: Opaque id of the transport connection
            send_message: Async function to send WebSocket messages to Twilio
            registry: Process-wide session registry
            config: Optional configuration (uses default if not provided)
            stt/llm/tts/codec/segmenter: Optional collaborators (built from config if omitted)
            clock: Monotonic clock used for mute windows
        """
        if config is None:
            config = get_config()

        self.config = config
        self.connection_id = connection_id
        self._send_message = send_message
        self._registry = registry
        self._clock = clock

        self._stt = stt or WhisperSTT(config)
        self._llm = llm or ChatLLM(config)
        self._tts = tts or ElevenLabsTTS(config)
        self._codec = codec or AudioCodec(config)
        self._segmenter = segmenter or AudioSegmenter(config.utterance_frames)
        self._owns_providers = (stt is None, llm is None, tts is None)

        self._session: Optional[Session] = None
        self._stopped = False
        self._log = logger.bind(connection_id=connection_id)

    @property
    def state(self) -> TurnState:
        if self._stopped:
            return TurnState.STOPPED
        if self._session is None:
            return TurnState.AWAITING_START
        return self._session.state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def stream_sid(self) -> str:
        return self._session.stream_sid if self._session else ""

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        Args:
            raw_message: Raw JSON message string
        """
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            self._log.warning("Failed to parse Twilio message", error=str(e))
            return

        await self.handle_event(event_type, event)

    async def handle_event(self, event_type: TwilioEventType, event: Any) -> None:
        if event_type == TwilioEventType.CONNECTED:
            self._log.debug("Twilio connected")

        elif event_type == TwilioEventType.START:
            self._handle_start(event)

        elif event_type == TwilioEventType.MEDIA:
            self._handle_media(event)

        elif event_type == TwilioEventType.MARK:
            self._handle_mark(event)

        elif event_type == TwilioEventType.DTMF:
            self._log.info("DTMF received", digit=event.digit)

        elif event_type == TwilioEventType.STOP:
            await self.stop(reason="stop")

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _handle_start(self, event: TwilioStartEvent) -> None:
        """Open the session and greet the caller."""
        if self._stopped:
            self._log.warning("Ignoring start after stop", stream_sid=event.stream_sid)
            return
        if self._session is not None:
            self._log.warning(
                "Ignoring duplicate start",
                stream_sid=event.stream_sid,
                current_stream_sid=self._session.stream_sid,
            )
            return

        history = ConversationHistory(
            get_system_prompt(self.config),
            max_messages=self.config.max_history_messages,
        )
        session = self._registry.open(
            self.connection_id,
            event.stream_sid,
            history,
            call_sid=event.call_sid,
        )
        self._session = session
        self._log = self._log.bind(stream_sid=event.stream_sid)
        self._log.info(
            "Call started",
            call_sid=event.call_sid,
            window_ms=self._segmenter.window_ms,
        )

        session.state = TurnState.GREETING
        session.pipeline_task = asyncio.create_task(self._run_greeting(session))

    def _handle_media(self, event: TwilioMediaEvent) -> None:
        """Gate, buffer and segment one inbound frame."""
        session = self._session
        if session is None or session.closed:
            return

        session.metrics.frames_received += 1
        now = self._clock()

        if session.mute.kind == MuteKind.UNTIL and not session.mute.is_muted(now):
            session.mute = MuteWindow.open()
            if session.state == TurnState.COOLDOWN:
                session.state = TurnState.LISTENING
                self._log.debug("Cooldown elapsed, listening")

        if session.state != TurnState.LISTENING or session.mute.is_muted(now):
            session.metrics.frames_dropped += 1
            return

        if not event.payload:
            return

        self._segmenter.accumulate(session, event.payload)
        if self._segmenter.is_utterance_ready(session):
            self._start_turn(session)

    def _handle_mark(self, event: TwilioMarkEvent) -> None:
        """Playback finished: start the cooldown window."""
        session = self._session
        if session is None or session.closed:
            return

        if not session.mute.awaiting_playback:
            self._log.debug("Ignoring mark outside playback", mark_name=event.name)
            return
        if session.pending_mark and event.name and event.name != session.pending_mark:
            self._log.debug("Ignoring stale mark", mark_name=event.name, pending_mark=session.pending_mark)
            return

        session.pending_mark = None
        session.mute = MuteWindow.until_time(self._clock() + self.config.cooldown_seconds)
        session.state = TurnState.COOLDOWN
        self._log.info(
            "Playback finished, cooldown set",
            mark_name=event.name,
            cooldown_seconds=self.config.cooldown_seconds,
        )

    # ------------------------------------------------------------------
    # Greeting
    # ------------------------------------------------------------------

    async def _run_greeting(self, session: Session) -> None:
        try:
            if self.config.greeting_delay_ms > 0:
                # Give Twilio a moment to be ready for outbound media.
                await asyncio.sleep(self.config.greeting_delay_ms / 1000)
            if not self._is_current(session):
                return

            audio = await self._synthesize_for_transport(session, self.config.greeting)
            if not self._is_current(session):
                return

            label = "greeting"
            if audio is None:
                audio = self._codec.fallback_tone()
                label = "fallback"
                session.metrics.fallback_tones += 1
                self._log.warning("Greeting TTS failed, sending fallback tone")

            session.state = TurnState.LISTENING
            if not await self._play(session, audio, label):
                return
            self._log.info("Greeting sent", kind=label, duration_ms=round(get_audio_duration_ms(audio), 1))

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.error("Greeting failed", error_type=type(e).__name__, error=str(e))
            self._return_to_listening(session)

    # ------------------------------------------------------------------
    # Turn pipeline
    # ------------------------------------------------------------------

    def _start_turn(self, session: Session) -> None:
        """Flush the window and start exactly one pipeline run."""
        if session.pipeline_busy:
            self._log.warning(
                "Pipeline already in flight; not starting another turn",
                buffered_frames=self._segmenter.buffered_frames(session),
            )
            return

        frames = self._segmenter.flush(session)
        session.turn_counter += 1
        session.state = TurnState.PROCESSING
        session.pipeline_task = asyncio.create_task(
            self._run_turn(session, frames, session.turn_counter)
        )

    async def _run_turn(self, session: Session, frames: list, turn_id: int) -> None:
        metrics = TurnMetrics(turn_id=turn_id, start_time=time.time(), frames=len(frames))
        outcome, failed_stage = "error", ""
        try:
            outcome, failed_stage = await self._process_turn(session, frames, metrics)
        except asyncio.CancelledError:
            outcome = "cancelled"
            raise
        except Exception as e:
            self._log.error(
                "Turn failed unexpectedly",
                turn_id=turn_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            self._return_to_listening(session)
        finally:
            self._end_turn(session, metrics, outcome, failed_stage)

    async def _process_turn(self, session: Session, frames: list, metrics: TurnMetrics) -> tuple[str, str]:
        """
        Run one turn. Returns (outcome, failed_stage).

        Every stage is followed by a liveness check so a result arriving after
        stop is never applied.
        """
        wav = await self._run_stage(
            session, TurnStage.TRANSCODE_IN,
            asyncio.to_thread(self._codec.to_provider_format, frames),
        )
        metrics.transcode_in_ms = wav.elapsed_ms
        if not self._is_current(session):
            return "abandoned", ""
        if not wav.ok:
            return self._drop_turn(session, wav)

        transcript = await self._run_stage(session, TurnStage.TRANSCRIBE, self._stt.transcribe(wav.value))
        metrics.stt_ms = transcript.elapsed_ms
        if not self._is_current(session):
            return "abandoned", ""
        if transcript.ok and not (transcript.value or "").strip():
            transcript.error = EmptyTranscript("Empty transcript", stage=TurnStage.TRANSCRIBE.value)
        if not transcript.ok:
            return self._drop_turn(session, transcript)

        text = transcript.value.strip()
        self._log.info("Caller said", turn_id=metrics.turn_id, text=_preview(text))
        session.history.add_user_message(text)

        reply = await self._run_stage(session, TurnStage.REPLY, self._llm.reply(session.history.get_messages()))
        metrics.llm_ms = reply.elapsed_ms
        if not self._is_current(session):
            return "abandoned", ""
        if not reply.ok:
            return self._drop_turn(session, reply)

        session.history.add_assistant_message(reply.value)
        self._log.info("Assistant reply", turn_id=metrics.turn_id, text=_preview(reply.value))

        started = time.time()
        audio = await self._synthesize_for_transport(session, reply.value, metrics)
        if not self._is_current(session):
            return "abandoned", ""

        outcome, failed_stage = "spoken", ""
        if audio is None:
            audio = self._codec.fallback_tone()
            session.metrics.fallback_tones += 1
            outcome, failed_stage = "fallback_tone", metrics.failed_stage or TurnStage.SYNTHESIZE.value
            self._log.warning("Reply TTS failed, sending fallback tone", turn_id=metrics.turn_id)

        session.state = TurnState.SPEAKING
        if not await self._play(session, audio, "reply"):
            return "send_failed", "send"
        self._log.debug(
            "Reply sent",
            turn_id=metrics.turn_id,
            duration_ms=round(get_audio_duration_ms(audio), 1),
            output_ms=round((time.time() - started) * 1000, 2),
        )
        return outcome, failed_stage

    async def _synthesize_for_transport(
        self,
        session: Session,
        text: str,
        metrics: Optional[TurnMetrics] = None,
    ) -> Optional[bytes]:
        """Synthesize and transcode to mu-law; None means play the fallback tone."""
        synthesized = await self._run_stage(session, TurnStage.SYNTHESIZE, self._tts.synthesize(text))
        if metrics is not None:
            metrics.tts_ms = synthesized.elapsed_ms
        if not synthesized.ok:
            if metrics is not None:
                metrics.failed_stage = synthesized.stage.value
            return None
        if not self._is_current(session):
            return None

        ulaw = await self._run_stage(
            session, TurnStage.TRANSCODE_OUT,
            asyncio.to_thread(self._codec.to_transport_format, synthesized.value),
        )
        if metrics is not None:
            metrics.transcode_out_ms = ulaw.elapsed_ms
        if not ulaw.ok:
            if metrics is not None:
                metrics.failed_stage = ulaw.stage.value
            return None
        return ulaw.value

    async def _run_stage(self, session: Session, stage: TurnStage, awaitable: Awaitable[T]) -> StageOutcome[T]:
        """Await one stage and fold any failure into a typed outcome."""
        started = time.time()
        outcome: StageOutcome[T] = StageOutcome(stage=stage)
        try:
            outcome.value = await awaitable
        except asyncio.CancelledError:
            raise
        except RelayError as e:
            if not e.stage:
                e.stage = stage.value
            outcome.error = e
        except Exception as e:
            error_cls = TranscodeError if stage in _TRANSCODE_STAGES else ProviderError
            outcome.error = error_cls(f"{type(e).__name__}: {e}", stage=stage.value)
            outcome.error.__cause__ = e
        outcome.elapsed_ms = (time.time() - started) * 1000

        if outcome.error is not None:
            self._log.warning(
                "Turn stage failed",
                stage=stage.value,
                error_type=type(outcome.error).__name__,
                error=str(outcome.error),
                elapsed_ms=round(outcome.elapsed_ms, 2),
            )
        return outcome

    def _drop_turn(self, session: Session, outcome: StageOutcome) -> tuple[str, str]:
        """Abandon the turn silently and keep listening."""
        self._return_to_listening(session)
        if isinstance(outcome.error, EmptyTranscript):
            return "empty_transcript", outcome.stage.value
        return "dropped", outcome.stage.value

    async def _play(self, session: Session, audio: bytes, label: str) -> bool:
        """
        Send one media payload and a mark; mute until Twilio acknowledges it.

        Returns False if the transport refused either message. No mark will
        come back then, so the mute is lifted and the session keeps listening.
        """
        mark_name = session.next_mark_name(label)
        session.pending_mark = mark_name
        session.mute = MuteWindow.indefinite()
        try:
            await self._send_message(create_media_message(session.stream_sid, audio))
            await self._send_message(create_mark_message(session.stream_sid, mark_name))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.error(
                "Failed to send audio",
                stage="send",
                mark_name=mark_name,
                error_type=type(e).__name__,
                error=str(e),
            )
            session.pending_mark = None
            session.mute = MuteWindow.open()
            self._return_to_listening(session)
            return False
        return True

    def _return_to_listening(self, session: Session) -> None:
        if not self._is_current(session):
            return
        session.state = TurnState.LISTENING
        if session.mute.kind != MuteKind.INDEFINITE:
            session.mute = MuteWindow.open()

    def _is_current(self, session: Session) -> bool:
        return not session.closed and self._registry.get(self.connection_id) is session

    def _end_turn(self, session: Session, metrics: TurnMetrics, outcome: str, failed_stage: str) -> None:
        metrics.finalize(outcome, failed_stage or metrics.failed_stage)
        session.metrics.turns.append(metrics)
        self._log.info(
            "Turn completed",
            turn_id=metrics.turn_id,
            outcome=metrics.outcome,
            failed_stage=metrics.failed_stage or None,
            frames=metrics.frames,
            stt_ms=round(metrics.stt_ms, 2),
            llm_ms=round(metrics.llm_ms, 2),
            tts_ms=round(metrics.tts_ms, 2),
            total_turn_ms=round(metrics.total_turn_ms, 2),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait_idle(self) -> None:
        """Wait for the in-flight greeting/turn task, if any."""
        session = self._session
        if session is None:
            return
        task = session.pipeline_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    async def stop(self, reason: str = "stop") -> None:
        """
        Destroy the session and release everything it holds.

        Safe to call repeatedly; only the first call does anything.
        """
        if self._stopped:
            self._log.debug("Stop ignored, already stopped", reason=reason)
            return
        self._stopped = True

        session = self._registry.close(self.connection_id)
        try:
            if session is not None:
                task = session.pipeline_task
                session.pipeline_task = None
                if task is not None and not task.done() and task is not asyncio.current_task():
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)

                session.metrics.end_time = time.time()
                self._log.info("Call ended", reason=reason, metrics=session.metrics.to_dict())
            else:
                self._log.info("Connection closed before stream start", reason=reason)
        finally:
            await self._close_providers()

    async def close(self) -> None:
        """Transport closed (normally or not)."""
        await self.stop(reason="disconnect")

    async def _close_providers(self) -> None:
        for owned, provider in zip(self._owns_providers, (self._stt, self._llm, self._tts)):
            if not owned:
                continue
            try:
                await provider.close()
            except Exception as e:
                self._log.warning("Error closing provider client", provider=type(provider).__name__, error=str(e))


def _preview(text: str, limit: int = 80) -> str:
    return text if len(text) <= limit else text[:limit] + "..."
