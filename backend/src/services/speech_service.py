"""ElevenLabs speech synthesis adapter (REST via httpx)."""

import logging
from dataclasses import asdict, dataclass
from typing import Any

import httpx

from src.config import Settings
from src.exceptions import SynthesisError
from src.schemas.recording import ScriptSegment

logger = logging.getLogger(__name__)

DEFAULT_STABILITY = 0.5
DEFAULT_CLARITY = 0.5
EXPRESSIVE_STYLE = 0.5


@dataclass
class Voice:
    id: str
    name: str
    category: str | None = None
    description: str | None = None
    preview_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ElevenLabsSpeechService:
    """Text in, MP3 bytes out."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        self.api_key = settings.elevenlabs_api_key
        self.model_id = settings.elevenlabs_model_id
        self.default_voice = settings.default_voice
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=settings.elevenlabs_base_url,
            timeout=settings.elevenlabs_timeout_s,
        )
        self._voices: list[Voice] | None = None

    def _headers(self, accept: str = "application/json") -> dict[str, str]:
        if not self.api_key:
            raise SynthesisError("ElevenLabs API key is not configured")
        return {
            "xi-api-key": self.api_key,
            "Content-Type": "application/json",
            "Accept": accept,
        }

    async def list_voices(self, refresh: bool = False) -> list[Voice]:
        """Fetch available voices (cached after the first call)."""
        if self._voices is not None and not refresh:
            return self._voices
        try:
            response = await self._client.get("/voices", headers=self._headers())
        except httpx.HTTPError as e:
            raise SynthesisError(f"Failed to fetch voices: {e}") from e
        if response.status_code != 200:
            raise SynthesisError(f"Failed to fetch voices: HTTP {response.status_code} {response.text[:200]}")

        self._voices = [
            Voice(
                id=v["voice_id"],
                name=v.get("name", ""),
                category=v.get("category"),
                description=v.get("description"),
                preview_url=v.get("preview_url"),
            )
            for v in response.json().get("voices", [])
        ]
        return self._voices

    async def resolve_voice(self, name_or_id: str | None) -> str:
        """Map a voice name or id to a voice id.

        Matches ids exactly and names case-insensitively; falls back to the
        first available voice.
        """
        wanted = (name_or_id or self.default_voice).strip()
        voices = await self.list_voices()
        if not voices:
            return wanted
        for voice in voices:
            if voice.id == wanted:
                return voice.id
        for voice in voices:
            if voice.name.lower() == wanted.lower():
                return voice.id
        logger.info(f"Voice '{wanted}' not found, using {voices[0].name}")
        return voices[0].id

    async def synthesize(
        self,
        text: str,
        voice_id: str,
        stability: float = DEFAULT_STABILITY,
        clarity: float = DEFAULT_CLARITY,
        style_strength: float = 0.0,
        speed: float | None = None,
    ) -> bytes:
        """Synthesize ``text`` and return MP3 bytes.

        Raises:
            SynthesisError: Provider rejected the request or was unreachable
        """
        voice_settings: dict[str, Any] = {
            "stability": stability,
            "similarity_boost": clarity,
            "style": style_strength,
            "use_speaker_boost": True,
        }
        if speed is not None and speed != 1.0:
            voice_settings["speed"] = speed
        body = {"text": text, "model_id": self.model_id, "voice_settings": voice_settings}

        try:
            response = await self._client.post(
                f"/text-to-speech/{voice_id}",
                json=body,
                headers=self._headers(accept="audio/mpeg"),
            )
        except httpx.HTTPError as e:
            raise SynthesisError(f"Speech synthesis request failed: {e}") from e
        if response.status_code != 200:
            raise SynthesisError(
                f"Speech synthesis failed: HTTP {response.status_code} {response.text[:200]}"
            )
        if not response.content:
            raise SynthesisError("Speech synthesis returned no audio")
        return response.content

    async def synthesize_segment(self, segment: ScriptSegment) -> bytes:
        """Synthesize a script segment using its voice settings."""
        settings = segment.voice_settings
        voice_id = await self.resolve_voice(settings.voice if settings else None)
        emotion = settings.emotion if settings else "neutral"
        return await self.synthesize(
            segment.text,
            voice_id,
            style_strength=0.0 if emotion == "neutral" else EXPRESSIVE_STYLE,
            speed=settings.speed if settings else None,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
