"""
Audio conversion utilities for the Twilio Voice Relay.

Twilio Media Streams carry 8kHz mono mu-law in 20ms frames. The relay needs:
- inbound: mu-law frames -> 16-bit PCM WAV for the transcription upload
- outbound: provider container (mp3 / pcm / wav / ulaw) -> 8kHz mu-law
- a short fallback tone when synthesis fails

PCM conversions run in-process with audioop. Compressed containers are decoded
with ffmpeg inside a scoped temporary directory, so no artifact outlives the call.
"""

import audioop
import io
import subprocess
import tempfile
import wave
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

import numpy as np
import structlog

from src.relay.config import get_config
from src.relay.errors import TranscodeError
from src.relay.tts_types import SynthesizedAudio

logger = structlog.get_logger(__name__)

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms

FALLBACK_TONE_HZ = 1000
FALLBACK_TONE_MS = 200
FFMPEG_TIMEOUT_SECONDS = 30


def ulaw_to_linear16(ulaw_bytes: bytes) -> bytes:
    """
    Convert mu-law 8kHz audio to linear PCM 16-bit.

    Args:
        ulaw_bytes: Raw mu-law encoded bytes at 8kHz

    Returns:
        Linear PCM 16-bit bytes at 8kHz
    """
    if not ulaw_bytes:
        return b""

    return audioop.ulaw2lin(ulaw_bytes, 2)


def linear16_to_ulaw(pcm_bytes: bytes) -> bytes:
    """
    Convert linear PCM 16-bit to mu-law.

    Args:
        pcm_bytes: Linear PCM 16-bit bytes

    Returns:
        Mu-law encoded bytes
    """
    if not pcm_bytes:
        return b""

    return audioop.lin2ulaw(pcm_bytes, 2)


def resample_pcm16(pcm_bytes: bytes, source_rate: int, target_rate: int) -> bytes:
    """
    Resample mono 16-bit PCM from `source_rate` to `target_rate` using `audioop.ratecv`.
    """
    if not pcm_bytes or source_rate == target_rate:
        return pcm_bytes
    converted, _ = audioop.ratecv(pcm_bytes, 2, 1, int(source_rate), int(target_rate), None)
    return converted


def read_wav_mono_pcm16(wav_bytes: bytes) -> tuple[int, bytes]:
    """
    Read a WAV byte string and return (sample_rate, mono PCM16 bytes).

    - If input is stereo, it is downmixed to mono.
    - If sample width is not 16-bit, raises ValueError.
    """
    if not wav_bytes:
        raise ValueError("Empty WAV")

    with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
        channels = wf.getnchannels()
        sample_width = wf.getsampwidth()
        sample_rate = wf.getframerate()
        frames = wf.readframes(wf.getnframes())

    if sample_width != 2:
        raise ValueError(f"Unsupported WAV sample width: {sample_width * 8} bits")

    if channels == 1:
        return int(sample_rate), frames

    if channels == 2:
        mono = audioop.tomono(frames, 2, 0.5, 0.5)
        return int(sample_rate), mono

    raise ValueError(f"Unsupported WAV channel count: {channels}")


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()


def wav_bytes_to_twilio_ulaw(wav_bytes: bytes) -> bytes:
    """Convert a PCM16 WAV byte string at any rate into Twilio 8kHz mu-law bytes."""
    sr, pcm = read_wav_mono_pcm16(wav_bytes)
    pcm_8k = resample_pcm16(pcm, sr, TWILIO_SAMPLE_RATE)
    return linear16_to_ulaw(pcm_8k)


def ulaw_frames_to_wav(frames: Sequence[bytes]) -> bytes:
    """
    Concatenate Twilio mu-law frames into an 8kHz mono 16-bit WAV.

    Args:
        frames: Raw mu-law frames in arrival order

    Returns:
        WAV byte string ready for a transcription upload
    """
    ulaw = b"".join(frames)
    return write_wav_mono_pcm16(ulaw_to_linear16(ulaw), TWILIO_SAMPLE_RATE)


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE, is_ulaw: bool = True) -> float:
    """
    Calculate the duration of audio in milliseconds.

    Args:
        audio_bytes: Audio bytes
        sample_rate: Sample rate in Hz
        is_ulaw: Whether the audio is mu-law (1 byte per sample) or PCM (2 bytes per sample)

    Returns:
        Duration in milliseconds
    """
    if not audio_bytes:
        return 0.0

    bytes_per_sample = 1 if is_ulaw else 2
    num_samples = len(audio_bytes) // bytes_per_sample
    duration_seconds = num_samples / sample_rate

    return duration_seconds * 1000


def generate_tone_ulaw(
    frequency_hz: int = FALLBACK_TONE_HZ,
    duration_ms: int = FALLBACK_TONE_MS,
    amplitude: float = 0.5,
) -> bytes:
    """Generate a sine tone as 8kHz mu-law."""
    num_samples = int(TWILIO_SAMPLE_RATE * duration_ms / 1000)
    t = np.arange(num_samples, dtype=np.float32) / TWILIO_SAMPLE_RATE
    samples = np.sin(2 * np.pi * frequency_hz * t) * (32767 * amplitude)
    pcm = np.clip(samples, -32768, 32767).astype(np.int16).tobytes()
    return linear16_to_ulaw(pcm)


def parse_output_format(output_format: str) -> tuple[str, Optional[int]]:
    """
    Split a provider output format such as `mp3_44100_128` or `pcm_16000`.

    Returns:
        (container, sample_rate) where sample_rate is None when not encoded
    """
    parts = (output_format or "").strip().lower().split("_")
    container = parts[0] if parts and parts[0] else "mp3"
    sample_rate: Optional[int] = None
    if len(parts) > 1:
        try:
            sample_rate = int(parts[1])
        except ValueError:
            sample_rate = None
    return container, sample_rate


@contextmanager
def scoped_workdir(root: Optional[str] = None) -> Iterator[Path]:
    """
    Temporary directory for transcoding artifacts.

    Removed on every exit path, including exceptions and task cancellation.
    """
    with tempfile.TemporaryDirectory(prefix="relay_", dir=root or None) as path:
        yield Path(path)


class AudioCodec:
    """
    Stateless converter between Twilio's narrowband encoding and provider formats.

    All methods are synchronous; call them via `asyncio.to_thread` from the
    event loop when they may shell out to ffmpeg.
    """

    def __init__(self, config: Optional[Any] = None):
        if config is None:
            config = get_config()

        self.ffmpeg_path = getattr(config, "ffmpeg_path", "ffmpeg") or "ffmpeg"
        self.temp_root = getattr(config, "audio_temp_dir", "") or None

    def to_provider_format(self, frames: Sequence[bytes]) -> bytes:
        """Concatenate inbound mu-law frames into a WAV upload."""
        if not frames:
            raise TranscodeError("No audio frames to transcode", stage="transcode_in")
        try:
            return ulaw_frames_to_wav(frames)
        except (audioop.error, wave.Error, ValueError) as e:
            raise TranscodeError(f"Inbound transcode failed: {e}", stage="transcode_in") from e

    def to_transport_format(self, audio: SynthesizedAudio) -> bytes:
        """Convert synthesized audio into 8kHz mu-law for Twilio."""
        if not audio.data:
            raise TranscodeError("Synthesized audio is empty", stage="transcode_out")

        container, sample_rate = parse_output_format(audio.output_format)

        try:
            if container == "ulaw" and (sample_rate or TWILIO_SAMPLE_RATE) == TWILIO_SAMPLE_RATE:
                return audio.data
            if container == "pcm":
                pcm_8k = resample_pcm16(audio.data, sample_rate or TWILIO_SAMPLE_RATE, TWILIO_SAMPLE_RATE)
                return linear16_to_ulaw(pcm_8k)
            if container == "wav":
                return wav_bytes_to_twilio_ulaw(audio.data)
        except (audioop.error, wave.Error, ValueError) as e:
            raise TranscodeError(f"Outbound transcode failed: {e}", stage="transcode_out") from e

        return self._ffmpeg_to_ulaw(audio.data, suffix=f".{container}")

    def fallback_tone(self) -> bytes:
        """Short fixed-frequency tone in transport format."""
        return generate_tone_ulaw(FALLBACK_TONE_HZ, FALLBACK_TONE_MS)

    def _ffmpeg_to_ulaw(self, data: bytes, *, suffix: str) -> bytes:
        """Decode a compressed container to 8kHz mono mu-law with ffmpeg."""
        with scoped_workdir(self.temp_root) as workdir:
            input_path = workdir / f"in{suffix}"
            output_path = workdir / "out.mulaw"
            input_path.write_bytes(data)

            cmd = [
                self.ffmpeg_path,
                "-hide_banner",
                "-loglevel", "error",
                "-y",
                "-i", str(input_path),
                "-ar", str(TWILIO_SAMPLE_RATE),
                "-ac", "1",
                "-f", "mulaw",
                str(output_path),
            ]

            try:
                subprocess.run(cmd, capture_output=True, check=True, timeout=FFMPEG_TIMEOUT_SECONDS)
            except subprocess.CalledProcessError as e:
                stderr = (e.stderr or b"").decode("utf-8", errors="ignore")
                logger.error("ffmpeg transcode failed", returncode=e.returncode, stderr=stderr[:200])
                raise TranscodeError(f"ffmpeg exited with {e.returncode}", stage="transcode_out") from e
            except subprocess.TimeoutExpired as e:
                raise TranscodeError("ffmpeg timed out", stage="transcode_out") from e
            except OSError as e:
                raise TranscodeError(f"ffmpeg unavailable: {e}", stage="transcode_out") from e

            if not output_path.exists():
                raise TranscodeError("ffmpeg produced no output", stage="transcode_out")

            ulaw = output_path.read_bytes()

        if not ulaw:
            raise TranscodeError("ffmpeg produced empty audio", stage="transcode_out")
        return ulaw
