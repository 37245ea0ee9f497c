import asyncio
import base64
import binascii
import logging
import uuid
from pathlib import Path
from typing import Optional

import httpx

from .errors import EmptyResponse, MalformedOutput, ProviderRejected
from .media import write_bytes
from .retry import SPEECH_POLICY, RetryingTransport, send_json
from . import settings

logger = logging.getLogger(__name__)


class MiniMaxSpeechClient:
    """MiniMax t2a_v2. Audio comes back hex encoded in ``data.audio``."""

    provider = "minimax"

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        model: Optional[str] = None,
        voice_id: Optional[str] = None,
        audio_format: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 60,
    ):
        self._api_key = api_key or settings.MINIMAX_API_KEY
        if not self._api_key:
            raise RuntimeError("MINIMAX_API_KEY is not set; please configure your .env")
        self.endpoint = endpoint or settings.MINIMAX_ENDPOINT
        self.model = model or settings.MINIMAX_MODEL
        self.voice_id = voice_id or settings.MINIMAX_VOICE_ID
        self.audio_format = audio_format or settings.MINIMAX_FORMAT
        self._client = httpx.AsyncClient(timeout=timeout, transport=RetryingTransport(SPEECH_POLICY, transport))

    def _headers(self):
        return {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}

    def build_payload(self, text: str) -> dict:
        voice_setting = {
            "voice_id": self.voice_id,
            "speed": settings.MINIMAX_SPEED,
            "vol": settings.MINIMAX_VOLUME,
            "pitch": settings.MINIMAX_PITCH,
        }
        if settings.MINIMAX_EMOTION:
            voice_setting["emotion"] = settings.MINIMAX_EMOTION
        return {
            "model": self.model,
            "text": text,
            "stream": False,
            "voice_setting": voice_setting,
            "audio_setting": {
                "sample_rate": settings.MINIMAX_SAMPLE_RATE,
                "bitrate": settings.MINIMAX_BITRATE,
                "format": self.audio_format,
                "channel": settings.MINIMAX_CHANNEL,
            },
            "subtitle_enable": False,
        }

    async def generate(self, text: str, output_path: Path) -> Path:
        logger.info(f"Requesting audio from {self.provider}: {text[:30]}...")
        body = await send_json(self._client, self.provider, self.endpoint, self.build_payload(text), self._headers())

        base_resp = body.get("base_resp") or {}
        if not isinstance(base_resp, dict):
            raise MalformedOutput(self.provider, f"base_resp is a {type(base_resp).__name__}, not an object")
        status_code = base_resp.get("status_code", 0)
        if status_code:
            raise ProviderRejected(
                self.provider, f"error {status_code}: {base_resp.get('status_msg', '')}", status_code=status_code
            )

        data = body.get("data") or {}
        if not isinstance(data, dict):
            raise MalformedOutput(self.provider, f"data is a {type(data).__name__}, not an object")
        audio_hex = data.get("audio")
        if not audio_hex:
            raise EmptyResponse(self.provider, "response audio is empty")
        if not isinstance(audio_hex, str):
            raise MalformedOutput(self.provider, f"audio is a {type(audio_hex).__name__}, not a hex string")
        try:
            audio = bytes.fromhex(audio_hex)
        except ValueError as e:
            raise MalformedOutput(self.provider, f"audio is not valid hex: {e}") from e

        await asyncio.to_thread(write_bytes, output_path, audio)
        logger.info(f"Saved audio to {output_path}")
        return Path(output_path)

    async def aclose(self) -> None:
        await self._client.aclose()


class VolcengineTtsClient:
    """Volcengine openspeech TTS. Audio comes back base64 encoded in ``data``."""

    provider = "volcengine-tts"

    def __init__(
        self,
        app_id: Optional[str] = None,
        access_token: Optional[str] = None,
        cluster: Optional[str] = None,
        endpoint: Optional[str] = None,
        voice_type: Optional[str] = None,
        audio_format: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 60,
    ):
        self.app_id = app_id or settings.VOLC_TTS_APP_ID
        self._access_token = access_token or settings.VOLC_TTS_ACCESS_TOKEN
        self.cluster = cluster or settings.VOLC_TTS_CLUSTER
        if not (self.app_id and self._access_token and self.cluster):
            raise RuntimeError("VOLC_TTS_APP_ID, VOLC_TTS_ACCESS_TOKEN and VOLC_TTS_CLUSTER must be set")
        self.endpoint = endpoint or settings.VOLC_TTS_ENDPOINT
        self.voice_type = voice_type or settings.VOLC_TTS_VOICE_TYPE
        self.audio_format = audio_format or settings.VOLC_TTS_ENCODING
        self._client = httpx.AsyncClient(timeout=timeout, transport=RetryingTransport(SPEECH_POLICY, transport))

    def _headers(self):
        return {"Authorization": f"Bearer {self._access_token}", "Content-Type": "application/json"}

    def build_payload(self, text: str) -> dict:
        return {
            "app": {"appid": self.app_id, "token": "access_token", "cluster": self.cluster},
            "user": {"uid": settings.VOLC_TTS_USER_ID},
            "audio": {
                "voice_type": self.voice_type,
                "encoding": self.audio_format,
                "speed_ratio": settings.VOLC_TTS_SPEED_RATIO,
                "volume_ratio": settings.VOLC_TTS_VOLUME_RATIO,
                "pitch_ratio": settings.VOLC_TTS_PITCH_RATIO,
            },
            "request": {
                "reqid": str(uuid.uuid4()),
                "text": text,
                "text_type": "plain",
                "operation": "query",
                "with_frontend": 1,
                "frontend_type": "unitTson",
            },
        }

    async def generate(self, text: str, output_path: Path) -> Path:
        logger.info(f"Requesting audio from {self.provider}: {text[:30]}...")
        body = await send_json(self._client, self.provider, self.endpoint, self.build_payload(text), self._headers())

        data = body.get("data")
        if not data:
            raise EmptyResponse(self.provider, "response audio is empty")
        if not isinstance(data, str):
            raise MalformedOutput(self.provider, f"data is a {type(data).__name__}, not a base64 string")
        try:
            audio = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedOutput(self.provider, f"audio is not valid base64: {e}") from e

        await asyncio.to_thread(write_bytes, output_path, audio)
        logger.info(f"Saved audio to {output_path}")
        return Path(output_path)

    async def aclose(self) -> None:
        await self._client.aclose()
