"""Tests for the ElevenLabs adapter against a mocked HTTP transport."""

import json

import httpx
import pytest

from src.exceptions import SynthesisError
from src.schemas.recording import ScriptSegment, VoiceSettings
from src.services.speech_service import ElevenLabsSpeechService

VOICES = {
    "voices": [
        {"voice_id": "21m00", "name": "Rachel", "category": "premade"},
        {"voice_id": "pNInz", "name": "Adam", "category": "premade"},
    ]
}


class FakeElevenLabs:
    def __init__(self, tts_status: int = 200):
        self.tts_status = tts_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("xi-api-key") != "test-key":
            return httpx.Response(401, json={"detail": "unauthorized"})
        if request.url.path.endswith("/voices"):
            return httpx.Response(200, json=VOICES)
        if "/text-to-speech/" in request.url.path:
            if self.tts_status != 200:
                return httpx.Response(self.tts_status, text="quota exceeded")
            return httpx.Response(200, content=b"ID3-mp3-bytes", headers={"content-type": "audio/mpeg"})
        return httpx.Response(404)

    @property
    def tts_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if "/text-to-speech/" in r.url.path]


@pytest.fixture
def api():
    return FakeElevenLabs()


@pytest.fixture
async def service(settings, api):
    client = httpx.AsyncClient(transport=httpx.MockTransport(api), base_url=settings.elevenlabs_base_url)
    service = ElevenLabsSpeechService(settings, http_client=client)
    yield service
    await client.aclose()


class TestVoices:
    @pytest.mark.asyncio
    async def test_list_voices_is_cached(self, service, api):
        first = await service.list_voices()
        second = await service.list_voices()

        assert [v.name for v in first] == ["Rachel", "Adam"]
        assert second is first
        assert len(api.requests) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "wanted,expected",
        [("pNInz", "pNInz"), ("adam", "pNInz"), ("RACHEL", "21m00"), ("nobody", "21m00"), (None, "21m00")],
    )
    async def test_resolve_voice(self, service, wanted, expected):
        assert await service.resolve_voice(wanted) == expected


class TestSynthesize:
    @pytest.mark.asyncio
    async def test_neutral_segment(self, service, api):
        segment = ScriptSegment(id="s1", text="Welcome to the demo")

        audio = await service.synthesize_segment(segment)

        assert audio == b"ID3-mp3-bytes"
        request = api.tts_requests[0]
        assert request.url.path.endswith("/text-to-speech/21m00")
        assert request.headers["accept"] == "audio/mpeg"
        body = json.loads(request.content)
        assert body["text"] == "Welcome to the demo"
        assert body["voice_settings"]["style"] == 0.0
        assert "speed" not in body["voice_settings"]

    @pytest.mark.asyncio
    async def test_expressive_segment_with_speed(self, service, api):
        segment = ScriptSegment(
            id="s2",
            text="Look at this!",
            voice_settings=VoiceSettings(voice="Adam", speed=1.2, emotion="excited"),
        )

        await service.synthesize_segment(segment)

        request = api.tts_requests[0]
        assert request.url.path.endswith("/text-to-speech/pNInz")
        voice_settings = json.loads(request.content)["voice_settings"]
        assert voice_settings["style"] == 0.5
        assert voice_settings["speed"] == 1.2

    @pytest.mark.asyncio
    async def test_provider_error(self, settings):
        api = FakeElevenLabs(tts_status=429)
        async with httpx.AsyncClient(transport=httpx.MockTransport(api), base_url=settings.elevenlabs_base_url) as client:
            service = ElevenLabsSpeechService(settings, http_client=client)
            with pytest.raises(SynthesisError) as exc_info:
                await service.synthesize("Hi", "21m00")

        assert "429" in exc_info.value.message
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_missing_api_key(self, settings, api):
        settings = settings.model_copy(update={"elevenlabs_api_key": ""})
        async with httpx.AsyncClient(transport=httpx.MockTransport(api), base_url=settings.elevenlabs_base_url) as client:
            service = ElevenLabsSpeechService(settings, http_client=client)
            with pytest.raises(SynthesisError):
                await service.synthesize("Hi", "21m00")
        assert api.requests == []
