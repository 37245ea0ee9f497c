#!/usr/bin/env python3
"""
Image and voice provider clients against httpx.MockTransport
"""
import asyncio
import base64
import io
import json
import os
import sys
from datetime import timedelta

import httpx
import pytest
from PIL import Image

sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'storyreel_backend'))

from storyreel.errors import EmptyResponse, MalformedOutput, MissingMedia, ProviderRejected
from storyreel.images import SeedreamImageClient
from storyreel.probe import read_duration
from storyreel.speech import MiniMaxSpeechClient, VolcengineTtsClient

IMAGE_ENDPOINT = "https://ark.example/api/v3/images/generations"


def _image_bytes(fmt, mode="RGBA"):
    buf = io.BytesIO()
    Image.new(mode, (8, 6), (255, 0, 0, 0) if mode == "RGBA" else (0, 0, 255)).save(buf, format=fmt)
    return buf.getvalue()


def _run_client(client, *args):
    async def run():
        try:
            return await client.generate(*args)
        finally:
            await client.aclose()
    return asyncio.run(run())


def test_seedream_b64_json_is_saved_as_rgb_png(tmp_path):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"data": [{"b64_json": base64.b64encode(_image_bytes("PNG")).decode()}]})

    client = SeedreamImageClient(api_key="k", endpoint=IMAGE_ENDPOINT, response_format="b64_json",
                                 seed=7, transport=httpx.MockTransport(handler))
    out = _run_client(client, "flat, a fox", tmp_path / "scene_001.png")

    assert seen[0]["prompt"] == "flat, a fox"
    assert seen[0]["response_format"] == "b64_json"
    assert seen[0]["seed"] == 7
    with Image.open(out) as img:
        assert img.format == "PNG"
        assert img.mode == "RGB"
        # Transparent pixels are flattened onto white.
        assert img.getpixel((0, 0)) == (255, 255, 255)


def test_seedream_url_result_is_downloaded(tmp_path):
    def handler(request):
        if request.method == "POST":
            return httpx.Response(200, json={"data": [{"url": "https://cdn.example/img.webp"}]})
        assert request.url.host == "cdn.example"
        return httpx.Response(200, content=_image_bytes("WEBP", mode="RGB"))

    client = SeedreamImageClient(api_key="k", endpoint=IMAGE_ENDPOINT, response_format="url",
                                 transport=httpx.MockTransport(handler))
    out = _run_client(client, "a fox", tmp_path / "scene_002.png")

    with Image.open(out) as img:
        assert img.format == "PNG"
        assert img.size == (8, 6)


def test_seedream_payload_omits_unset_seed():
    client = SeedreamImageClient(api_key="k", seed=None, transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    client.seed = None
    payload = client.build_payload("a fox")
    assert "seed" not in payload
    assert payload["stream"] is False
    assert payload["sequential_image_generation"] == "disabled"
    asyncio.run(client.aclose())


def test_seedream_empty_and_rejected(tmp_path):
    def empty(request):
        return httpx.Response(200, json={"data": []})

    calls = []

    def rejected(request):
        calls.append(request)
        return httpx.Response(400, json={"error": {"code": "InputTextSensitiveContentDetected"}})

    with pytest.raises(EmptyResponse):
        _run_client(SeedreamImageClient(api_key="k", transport=httpx.MockTransport(empty)), "x", tmp_path / "a.png")
    with pytest.raises(ProviderRejected):
        _run_client(SeedreamImageClient(api_key="k", transport=httpx.MockTransport(rejected)), "x", tmp_path / "b.png")
    assert len(calls) == 1


def test_seedream_undecodable_image_is_malformed(tmp_path):
    def handler(request):
        return httpx.Response(200, json={"data": [{"b64_json": base64.b64encode(b"not an image").decode()}]})

    client = SeedreamImageClient(api_key="k", response_format="b64_json", transport=httpx.MockTransport(handler))
    with pytest.raises(MalformedOutput):
        _run_client(client, "x", tmp_path / "c.png")


@pytest.mark.parametrize("body", [
    {"data": {"url": "https://cdn.example/img.png"}},
    {"data": "https://cdn.example/img.png"},
    {"data": ["https://cdn.example/img.png"]},
    {"data": [{"url": 42}]},
    {"data": [{"url": ["https://cdn.example/img.png"]}]},
])
def test_seedream_wrong_response_shape_is_malformed(tmp_path, body):
    client = SeedreamImageClient(api_key="k", response_format="url",
                                 transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body)))
    with pytest.raises(MalformedOutput):
        _run_client(client, "x", tmp_path / "d.png")


def test_seedream_missing_url_is_empty(tmp_path):
    client = SeedreamImageClient(api_key="k", response_format="url",
                                 transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"data": [{}]})))
    with pytest.raises(EmptyResponse):
        _run_client(client, "x", tmp_path / "e.png")


def test_minimax_hex_audio_is_written_verbatim(tmp_path):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"data": {"audio": b"ID3fake".hex()}, "base_resp": {"status_code": 0}})

    client = MiniMaxSpeechClient(api_key="k", voice_id="narrator", transport=httpx.MockTransport(handler))
    out = _run_client(client, "你好，世界。", tmp_path / "scene_001.mp3")

    assert out.read_bytes() == b"ID3fake"
    assert seen[0]["text"] == "你好，世界。"
    assert seen[0]["voice_setting"]["voice_id"] == "narrator"
    assert seen[0]["audio_setting"]["format"] == "mp3"
    assert seen[0]["stream"] is False


def test_minimax_business_error_and_empty_audio(tmp_path):
    def business_error(request):
        return httpx.Response(200, json={"base_resp": {"status_code": 1004, "status_msg": "auth failed"}})

    def empty(request):
        return httpx.Response(200, json={"data": {"audio": ""}, "base_resp": {"status_code": 0}})

    with pytest.raises(ProviderRejected) as exc_info:
        _run_client(MiniMaxSpeechClient(api_key="k", transport=httpx.MockTransport(business_error)), "x", tmp_path / "a.mp3")
    assert exc_info.value.status_code == 1004
    with pytest.raises(EmptyResponse):
        _run_client(MiniMaxSpeechClient(api_key="k", transport=httpx.MockTransport(empty)), "x", tmp_path / "b.mp3")


def test_volcengine_base64_audio(tmp_path):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"code": 3000, "data": base64.b64encode(b"RIFFfake").decode()})

    client = VolcengineTtsClient(app_id="app", access_token="tok", cluster="volcano_tts",
                                 audio_format="wav", transport=httpx.MockTransport(handler))
    assert client.audio_format == "wav"
    out = _run_client(client, "Hello.", tmp_path / "scene_001.wav")

    assert out.read_bytes() == b"RIFFfake"
    assert seen[0]["app"] == {"appid": "app", "token": "access_token", "cluster": "volcano_tts"}
    assert seen[0]["request"]["text"] == "Hello."
    assert seen[0]["audio"]["encoding"] == "wav"


@pytest.mark.parametrize("body", [
    {"base_resp": "oops"},
    {"data": ["00ff"], "base_resp": {"status_code": 0}},
    {"data": "00ff", "base_resp": {"status_code": 0}},
    {"data": {"audio": 1234}, "base_resp": {"status_code": 0}},
    {"data": {"audio": "not hex"}, "base_resp": {"status_code": 0}},
])
def test_minimax_wrong_response_shape_is_malformed(tmp_path, body):
    client = MiniMaxSpeechClient(api_key="k", transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body)))
    with pytest.raises(MalformedOutput):
        _run_client(client, "x", tmp_path / "c.mp3")


@pytest.mark.parametrize("data", [123, ["UklGRg=="], {"audio": "UklGRg=="}, "not base64!"])
def test_volcengine_wrong_data_is_malformed(tmp_path, data):
    def handler(request):
        return httpx.Response(200, json={"code": 3000, "data": data})

    client = VolcengineTtsClient(app_id="app", access_token="tok", cluster="volcano_tts",
                                 transport=httpx.MockTransport(handler))
    with pytest.raises(MalformedOutput):
        _run_client(client, "x", tmp_path / "c.mp3")


def test_probe_rejects_missing_and_unreadable_files(tmp_path):
    with pytest.raises(MissingMedia):
        read_duration(tmp_path / "nope.mp3")
    junk = tmp_path / "junk.mp3"
    junk.write_bytes(b"\x00" * 16)
    with pytest.raises(MalformedOutput):
        read_duration(junk)


def test_probe_reads_wav_duration(tmp_path):
    import wave

    path = tmp_path / "tone.wav"
    with wave.open(str(path), "wb") as w:
        w.setnchannels(1)
        w.setsampwidth(2)
        w.setframerate(8000)
        w.writeframes(b"\x00\x00" * 12000)
    assert read_duration(path) == timedelta(seconds=1.5)
