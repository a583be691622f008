"""
Speech synthesis.

``split_into_sentences`` turns text into speakable units, and
``HttpSpeechSynthesizer`` renders one unit to base64 audio through the
asynchronous TTS API (submit, poll the task, download the result).
"""

import asyncio
import base64
import re
from collections.abc import Awaitable, Callable
from typing import Protocol

import httpx
import structlog

from .config import Settings, get_settings
from .errors import SynthesisFailure

logger = structlog.get_logger(__name__)

MIN_SENTENCE_CHARS = 20

_FRAGMENT_RE = re.compile(r"[^.!?]+[.!?]+|[^.!?]+$")

VOICE_IDS: dict[str, str] = {
    "alloy": "21m00Tcm4TlvDq8ikWAM",
    "ash": "29vD33N1CtxCmqQRPOHJ",
    "coral": "EXAVITQu4vr4xnSDxMaL",
    "echo": "ErXwobaYiN019PkySvjV",
    "fable": "MF3mGyEYCl7XYWbV9V6O",
    "nova": "jBpfuIE2acCO8z3wKNLl",
    "onyx": "onwK4e9ZLuTAKqWW03F9",
    "sage": "pqHfZKP75CvOlQylNhV4",
    "shimmer": "z9fAnlkpzviPz146aGWa",
}
DEFAULT_VOICE = "alloy"
DEFAULT_VOICE_ID = VOICE_IDS[DEFAULT_VOICE]

_AUDIO_URL_KEYS = ("audio_url", "url", "output_url", "download_url")


def resolve_voice(voice: str | None) -> str:
    """Known voice name, or the default voice."""
    return voice if voice in VOICE_IDS else DEFAULT_VOICE


def split_into_sentences(text: str) -> list[str]:
    """
    Split text into sentences, merging short fragments.

    A fragment shorter than MIN_SENTENCE_CHARS is appended to the sentence
    before it; a short leading fragment is carried into the one after it. A
    text that is one short fragment in total is returned as-is. Empty
    strings are never returned.
    """
    fragments = [f.strip() for f in _FRAGMENT_RE.findall(text)]
    fragments = [f for f in fragments if f]

    merged: list[str] = []
    carry = ""
    for fragment in fragments:
        if carry:
            fragment = f"{carry} {fragment}"
            carry = ""
        if len(fragment) >= MIN_SENTENCE_CHARS:
            merged.append(fragment)
        elif merged:
            merged[-1] = f"{merged[-1]} {fragment}"
        else:
            carry = fragment
    if carry:
        merged.append(carry)
    return merged


class SpeechSynthesizer(Protocol):
    async def synthesize(self, text: str, voice: str, *, index: int = 0) -> str: ...


class HttpSpeechSynthesizer:
    """Client for the submit/poll/download TTS API."""

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.tts_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=30.0)
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def _auth(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.settings.tts_api_key}"}

    async def synthesize(self, text: str, voice: str, *, index: int = 0) -> str:
        """
        Render text to speech and return base64-encoded audio.

        Raises:
            SynthesisFailure: Submission, polling or download failed.
        """
        voice_id = VOICE_IDS.get(voice, DEFAULT_VOICE_ID)
        try:
            status_url = await self._submit(text, voice_id, index)
            audio_url = await self._wait_for_audio(status_url, index)
            response = await self._client.get(audio_url)
            if not response.is_success:
                raise SynthesisFailure(
                    index, f"audio download failed ({response.status_code})"
                )
        except httpx.HTTPError as e:
            raise SynthesisFailure(index, str(e), e) from e

        logger.debug(
            "speech_synthesized",
            index=index,
            chars=len(text),
            bytes=len(response.content),
        )
        return base64.b64encode(response.content).decode("ascii")

    async def _submit(self, text: str, voice_id: str, index: int) -> str:
        form = {
            "text": (None, text),
            "voice_id": (None, voice_id),
            "model_id": (None, self.settings.tts_model),
            "stability": (None, "0.5"),
            "similarity": (None, "0.75"),
            "speed": (None, "1.0"),
        }
        response = await self._client.post(
            f"{self.base_url}/generate", files=form, headers=self._auth
        )
        if not response.is_success:
            raise SynthesisFailure(
                index, f"submit failed ({response.status_code}): {response.text[:200]}"
            )
        data = response.json()
        if not data.get("success") or not data.get("status_url"):
            raise SynthesisFailure(index, f"submit rejected: {data}")
        return data["status_url"]

    async def _wait_for_audio(self, status_url: str, index: int) -> str:
        attempts = self.settings.tts_poll_attempts
        for _ in range(attempts):
            await self._sleep(self.settings.tts_poll_interval_seconds)
            response = await self._client.get(status_url, headers=self._auth)
            data = response.json()
            status = data.get("status")

            if status == "completed":
                for key in _AUDIO_URL_KEYS:
                    if data.get(key):
                        return data[key]
                raise SynthesisFailure(index, "completed without an audio url")
            if status in ("failed", "error"):
                raise SynthesisFailure(index, data.get("error") or "generation failed")

        raise SynthesisFailure(index, f"timed out after {attempts} polls")
