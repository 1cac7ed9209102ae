import re
import ssl

import aiohttp
import certifi

from tutorloop.config import Settings
from tutorloop.errors import CapabilityUnavailable, ServiceError

_SSL_CTX = ssl.create_default_context(cafile=certifi.where())

ELEVENLABS_API_URL = "https://api.elevenlabs.io/v1/text-to-speech"

_SYMBOL_WORDS = [
    ("²", " squared"),
    ("³", " cubed"),
    ("√", " square root of "),
    ("∛", " cube root of "),
    ("π", " pi "),
    ("∞", " infinity "),
    ("×", " times "),
    ("÷", " divided by "),
    ("±", " plus or minus "),
    ("≠", " not equal to "),
    ("≈", " approximately equal to "),
    ("≤", " less than or equal to "),
    ("≥", " greater than or equal to "),
    ("∑", " sum of "),
    ("∫", " integral of "),
    ("∂", " partial derivative of "),
    ("∆", " delta "),
    ("θ", " theta "),
    ("α", " alpha "),
    ("β", " beta "),
    ("γ", " gamma "),
    ("λ", " lambda "),
    ("μ", " mu "),
    ("σ", " sigma "),
    ("φ", " phi "),
    ("ω", " omega "),
]


def clean_for_speech(text: str, max_chars: int = 300) -> str:
    """Strip markup the voice would stumble over and spell out maths symbols."""
    text = re.sub(r"```[\w]*\n?", "", text)
    text = text.replace("```", "")
    text = re.sub(r"\[([^\]]*)\]\([^)]*\)", r"\1", text)  # markdown link -> label
    text = re.sub(r"`([^`]*)`", r"\1", text)
    text = re.sub(r"[{}\[\]]", "", text)
    text = re.sub(r'"\s*:', "", text)
    text = re.sub(r"\*+", "", text)
    text = text.replace("|", "")
    text = re.sub(r"#+\s*", "", text)
    text = re.sub(r"_+", "", text)
    for symbol, words in _SYMBOL_WORDS:
        text = text.replace(symbol, words)
    text = re.sub(r"\^(\w+)", r" to the power of \1 ", text)
    text = re.sub(r"\s{2,}", " ", text).strip()
    return text[:max_chars].strip()


class TTSClient:
    def __init__(self, settings: Settings):
        self.api_key = settings.elevenlabs_api_key
        self.voice_id = settings.elevenlabs_voice_id
        self.max_chars = settings.speech_max_chars
        self.enabled = bool(self.api_key)

    async def synthesize(self, text: str) -> bytes:
        """
        Convert text to speech via ElevenLabs and return complete mp3 bytes.

        Raises CapabilityUnavailable when no API key is configured (or nothing
        speakable is left after cleaning) and ServiceError on network failure.
        """
        if not self.enabled:
            raise CapabilityUnavailable("speech_output", "ELEVENLABS_API_KEY not set")
        cleaned = clean_for_speech(text, self.max_chars)
        if not cleaned:
            raise CapabilityUnavailable("speech_output", "nothing to say")

        try:
            chunks: list[bytes] = []
            async for chunk in self._stream(cleaned):
                chunks.append(chunk)
            return b"".join(chunks)
        except aiohttp.ClientError as e:
            raise ServiceError(f"TTS error: {e}") from e

    async def _stream(self, text: str):
        """POST to ElevenLabs streaming endpoint and yield raw mp3 chunks."""
        url = f"{ELEVENLABS_API_URL}/{self.voice_id}/stream"
        headers = {
            "xi-api-key": self.api_key,
            "Content-Type": "application/json",
            "Accept": "audio/mpeg",
        }
        payload = {
            "text": text,
            "model_id": "eleven_turbo_v2_5",
            "voice_settings": {
                "stability": 0.28,
                "similarity_boost": 0.82,
                "style": 0.35,
                "use_speaker_boost": True,
            },
        }
        connector = aiohttp.TCPConnector(ssl=_SSL_CTX)
        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.post(url, headers=headers, json=payload) as resp:
                resp.raise_for_status()
                async for chunk in resp.content.iter_chunked(4096):
                    yield chunk
