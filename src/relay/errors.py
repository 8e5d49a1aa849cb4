"""
Failure taxonomy for a single conversation turn.

Every error here is recoverable and local to one turn: the controller decides
whether the caller hears a fallback tone or nothing at all.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for turn-level failures."""

    def __init__(self, message: str, *, stage: str = "") -> None:
        super().__init__(message)
        self.stage = stage


class ProviderError(RelayError):
    """A speech, language or synthesis provider call failed."""


class ProviderTimeout(ProviderError):
    """The provider did not answer within the configured timeout."""


class ProviderHTTPError(ProviderError):
    """The provider answered with a non-2xx status."""

    def __init__(
        self,
        message: str,
        *,
        stage: str = "",
        status_code: int = 0,
        body_preview: Optional[str] = None,
    ) -> None:
        super().__init__(message, stage=stage)
        self.status_code = status_code
        self.body_preview = body_preview


class ProviderMalformedResponse(ProviderError):
    """The provider answered 2xx but the payload was unusable."""


class TranscodeError(RelayError):
    """Audio conversion failed."""


class EmptyTranscript(RelayError):
    """Speech recognition succeeded but returned no words."""
