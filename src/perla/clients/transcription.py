"""Speech-to-text via OpenAI's audio transcription API."""

import io

import openai
import structlog

from perla.config import get_settings
from perla.errors import TranscriptionError

logger = structlog.get_logger(__name__)

MAX_AUDIO_BYTES = 10 * 1024 * 1024


class WhisperTranscriber:
    """Turns recorded audio into text that the session treats as user input."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        language: str | None = None,
    ):
        settings = get_settings()
        if api_key is None and settings.openai_api_key is not None:
            api_key = settings.openai_api_key.get_secret_value()
        self._model = model or settings.transcription_model
        self._language = language or settings.transcription_language
        self._client = openai.AsyncOpenAI(api_key=api_key)
        self._logger = logger.bind(client="whisper", model=self._model)

    async def transcribe(
        self,
        audio: bytes,
        filename: str = "recording.webm",
        language: str | None = None,
    ) -> str:
        """Transcribe an audio payload.

        Raises:
            TranscriptionError: If the audio is empty or too large, the
                provider fails, or no text comes back.
        """
        if not audio:
            raise TranscriptionError("The audio recording is empty.")
        if len(audio) > MAX_AUDIO_BYTES:
            raise TranscriptionError("The audio recording exceeds 10MB.")

        buffer = io.BytesIO(audio)
        buffer.name = filename
        self._logger.debug("transcribing", size=len(audio), filename=filename)

        try:
            result = await self._client.audio.transcriptions.create(
                file=buffer,
                model=self._model,
                language=language or self._language,
            )
        except openai.APIError as e:
            self._logger.error("transcription_failed", error=str(e))
            raise TranscriptionError(f"Error en la transcripción: {e}") from e

        text = (result.text or "").strip()
        if not text:
            raise TranscriptionError("No text in transcription response")

        self._logger.info("transcription_complete", characters=len(text))
        return text

    async def close(self) -> None:
        await self._client.close()
