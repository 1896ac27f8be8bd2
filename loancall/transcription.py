"""
Speech-to-text adapter over the OpenAI audio transcription endpoint.
"""

from __future__ import annotations

from typing import Optional

import openai
import structlog
from openai import AsyncOpenAI

from loancall.errors import TranscriptionFailed

log = structlog.get_logger(__name__)

# (magic bytes, offset, upload filename)
_AUDIO_SIGNATURES: tuple[tuple[bytes, int, str], ...] = (
    (b"RIFF", 0, "audio.wav"),
    (b"ID3", 0, "audio.mp3"),
    (b"ftyp", 4, "audio.m4a"),
    (b"OggS", 0, "audio.ogg"),
    (b"fLaC", 0, "audio.flac"),
    (b"\x1a\x45\xdf\xa3", 0, "audio.webm"),
)


def sniff_audio_filename(audio: bytes) -> Optional[str]:
    """Guess an upload filename from the container signature, or None."""
    for magic, offset, name in _AUDIO_SIGNATURES:
        if audio[offset:offset + len(magic)] == magic:
            return name
    # Bare MPEG frame sync
    if len(audio) > 1 and audio[0] == 0xFF and (audio[1] & 0xE0) == 0xE0:
        return "audio.mp3"
    return None


class Transcriber:
    """Turns raw audio bytes into plain transcript text. Does not retry."""

    def __init__(self, client: Optional[AsyncOpenAI], model: str = "whisper-1", timeout: float = 300.0):
        self.client = client
        self.model = model
        self.timeout = timeout

    async def transcribe(self, audio: bytes) -> str:
        if not audio:
            raise TranscriptionFailed("Audio file is empty")

        filename = sniff_audio_filename(audio)
        if filename is None:
            raise TranscriptionFailed("Unsupported audio format")
        if self.client is None:
            raise TranscriptionFailed("OpenAI API key is not configured")

        try:
            result = await self.client.audio.transcriptions.create(
                model=self.model,
                file=(filename, audio),
                timeout=self.timeout,
            )
        except openai.APITimeoutError as e:
            raise TranscriptionFailed("Transcription timed out") from e
        except openai.APIError as e:
            log.warning("transcription_api_error", model=self.model, error=str(e))
            raise TranscriptionFailed(f"Transcription request failed: {e}") from e

        text = (getattr(result, "text", "") or "").strip()
        if not text:
            raise TranscriptionFailed("Transcription returned no text")

        log.info("transcription_done", model=self.model, chars=len(text), audio_bytes=len(audio))
        return text
