import logging
from typing import Optional

import openai
from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

ACCEPTED_CONTENT_TYPES = ("audio/", "video/webm", "application/octet-stream")


class VoiceInputError(Exception):
    """Speech could not be turned into text."""


class VoiceUnsupported(VoiceInputError):
    pass


class NoSpeechDetected(VoiceInputError):
    pass


class MicrophonePermissionDenied(VoiceInputError):
    pass


class VoiceTranscriber:
    """Produces one text transcript from a recorded clip."""

    def __init__(self, api_key: Optional[str] = None, model: str = "whisper-1",
                 client: Optional[AsyncOpenAI] = None):
        self.api_key = api_key
        self.model = model
        self._client = client

    @property
    def supported(self) -> bool:
        return self._client is not None or bool(self.api_key)

    def get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def listen(self, audio: bytes, filename: Optional[str] = None,
                     content_type: Optional[str] = None) -> str:
        if not self.supported:
            raise VoiceUnsupported("Speech recognition is not configured on this server.")
        if content_type and not content_type.startswith(ACCEPTED_CONTENT_TYPES):
            raise VoiceUnsupported(f"Unsupported audio type: {content_type}")
        if not audio:
            raise NoSpeechDetected("No speech was detected. Please try again.")

        try:
            result = await self.get_client().audio.transcriptions.create(
                model=self.model,
                file=(filename or "speech.webm", audio, content_type or "audio/webm"),
                language="en"
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            logger.error(f"Transcription refused: {e}")
            raise MicrophonePermissionDenied("Speech recognition permission was denied.") from e
        except openai.OpenAIError as e:
            logger.error(f"Transcription error: {e}")
            raise VoiceInputError("Speech recognition failed. Please try again.") from e

        transcript = (getattr(result, "text", "") or "").strip()
        if not transcript:
            raise NoSpeechDetected("No speech was detected. Please try again.")
        logger.info(f"Transcribed {len(audio)} bytes of audio")
        return transcript
