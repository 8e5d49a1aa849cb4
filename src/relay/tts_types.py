from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class SynthesizedAudio:
    """
    Audio returned by the synthesis provider.

    `output_format` uses the provider's naming (e.g. `mp3_44100_128`,
    `pcm_16000`, `ulaw_8000`) and tells the codec how to decode `data`.
    """

    data: bytes
    output_format: str
    timestamp: float = field(default_factory=time.time)

    # Optional: structured metadata for debugging/metrics.
    meta: Optional[dict[str, Any]] = None
