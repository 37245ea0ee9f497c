#!/usr/bin/env python3
"""
Per-scene asset fan-out with fake voice/probe collaborators and fake or
mock-transport image providers
"""
import asyncio
import base64
import io
import os
import sys
import time
from datetime import timedelta
from pathlib import Path

import httpx
import pytest
from PIL import Image

sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'storyreel_backend'))

from storyreel.assets import AssetSynthesisOrchestrator
from storyreel.cancellation import CancelToken
from storyreel.errors import EmptyResponse, OperationCancelled, ProviderRejected
from storyreel.images import SeedreamImageClient
from storyreel.models import ProductionStage, Scene, Storyboard, VideoProject
from storyreel.progress import ProgressReporter


def _scene_index(path) -> int:
    return int(Path(path).stem.split("_")[1])


class FakeImage:
    def __init__(self, fail=(), delay=0.02):
        self.fail = set(fail)
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.calls = []

    async def generate(self, prompt, output_path):
        self.calls.append(_scene_index(output_path))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            if _scene_index(output_path) in self.fail:
                raise ProviderRejected("fake-image", "content policy")
            Path(output_path).write_bytes(b"png")
            return Path(output_path)
        finally:
            self.active -= 1


class FakeSpeech:
    audio_format = "mp3"

    def __init__(self, fail=(), delay=0.01):
        self.fail = set(fail)
        self.delay = delay
        self.active = 0

    async def generate(self, text, output_path):
        self.active += 1
        try:
            await asyncio.sleep(self.delay)
            if _scene_index(output_path) in self.fail:
                raise EmptyResponse("fake-speech", "no audio")
            Path(output_path).write_bytes(b"mp3")
            return Path(output_path)
        finally:
            self.active -= 1


class FakeProbe:
    async def duration(self, audio_path):
        return timedelta(seconds=_scene_index(audio_path) + 0.5)


def _project(tmp_path):
    return VideoProject(project_id="job-1", title="Test", output_directory=tmp_path, raw_story_text="story")


def _storyboard(n):
    return Storyboard(
        base_visual_style="flat",
        scenes=[Scene(index=i, speech_text=f"Line {i}.", visual_prompt=f"flat, picture {i}") for i in range(1, n + 1)],
    )


def _run(orchestrator, tmp_path, n, reporter=None, token=None):
    return asyncio.run(orchestrator.generate(_project(tmp_path), _storyboard(n), reporter, token))


def test_one_asset_per_scene_sorted_by_index(tmp_path):
    image = FakeImage()
    assets = _run(AssetSynthesisOrchestrator(image, FakeSpeech(), FakeProbe()), tmp_path, 5)

    assert [a.scene_index for a in assets] == [1, 2, 3, 4, 5]
    assert sorted(image.calls) == [1, 2, 3, 4, 5]
    for a in assets:
        assert a.image_path == tmp_path / f"scene_{a.scene_index:03d}.png"
        assert a.audio_path == tmp_path / f"scene_{a.scene_index:03d}.mp3"
        assert a.audio_duration == timedelta(seconds=a.scene_index + 0.5)
        assert a.speech_text == f"Line {a.scene_index}."


def test_scene_manifest_is_written(tmp_path):
    _run(AssetSynthesisOrchestrator(FakeImage(), FakeSpeech(), FakeProbe()), tmp_path, 2)

    text = (tmp_path / "scene_002.txt").read_text(encoding="utf-8")
    assert text == "[Visual Prompt]\nflat, picture 2\n\n[Speech Text]\nLine 2."


def test_image_concurrency_is_bounded(tmp_path):
    image = FakeImage(delay=0.05)
    orchestrator = AssetSynthesisOrchestrator(image, FakeSpeech(), FakeProbe(), max_image_concurrency=3)
    assets = _run(orchestrator, tmp_path, 12)

    assert len(assets) == 12
    assert image.peak == 3


def test_failed_image_becomes_placeholder(tmp_path):
    image = FakeImage(fail={2})
    orchestrator = AssetSynthesisOrchestrator(image, FakeSpeech(), FakeProbe(), placeholder_size=(64, 36))
    assets = _run(orchestrator, tmp_path, 3)

    assert [a.scene_index for a in assets] == [1, 2, 3]
    # Exactly one attempt at this layer; retries live in the transport.
    assert image.calls.count(2) == 1
    with Image.open(assets[1].image_path) as img:
        assert img.size == (64, 36)
        assert img.getpixel((0, 0)) == (128, 128, 128)
    assert assets[0].image_path.read_bytes() == b"png"


class BrokenImage:
    async def generate(self, prompt, output_path):
        raise RuntimeError("image client bug")


def test_unexpected_image_error_becomes_placeholder(tmp_path):
    orchestrator = AssetSynthesisOrchestrator(BrokenImage(), FakeSpeech(), FakeProbe(), placeholder_size=(64, 36))
    assets = _run(orchestrator, tmp_path, 2)

    assert [a.scene_index for a in assets] == [1, 2]
    for a in assets:
        with Image.open(a.image_path) as img:
            assert img.getpixel((0, 0)) == (128, 128, 128)


IMAGE_ENDPOINT = "https://ark.example/api/v3/images/generations"


def _png_b64(color=(255, 0, 0)):
    buf = io.BytesIO()
    Image.new("RGB", (8, 6), color).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode()


def _run_with_seedream(tmp_path, handler, delays, n=1):
    async def no_sleep(delay):
        delays.append(delay)

    async def run():
        image = SeedreamImageClient(api_key="k", endpoint=IMAGE_ENDPOINT, response_format="b64_json",
                                    transport=httpx.MockTransport(handler), sleep=no_sleep)
        orchestrator = AssetSynthesisOrchestrator(image, FakeSpeech(), FakeProbe(), placeholder_size=(64, 36))
        try:
            return await orchestrator.generate(_project(tmp_path), _storyboard(n))
        finally:
            await orchestrator.aclose()

    return asyncio.run(run())


@pytest.mark.parametrize("body", [
    {"data": {"url": "https://cdn.example/img.png"}},
    {"data": [{"url": 42}]},
    {"data": [{"b64_json": 42}]},
])
def test_malformed_image_response_becomes_placeholder(tmp_path, body):
    assets = _run_with_seedream(tmp_path, lambda r: httpx.Response(200, json=body), [])

    assert [a.scene_index for a in assets] == [1]
    with Image.open(assets[0].image_path) as img:
        assert img.size == (64, 36)
        assert img.getpixel((0, 0)) == (128, 128, 128)


def test_image_server_errors_exhaust_retries_then_placeholder(tmp_path):
    requests = []
    delays = []

    def handler(request):
        requests.append(request)
        return httpx.Response(503, text="busy")

    assets = _run_with_seedream(tmp_path, handler, delays)

    assert len(requests) == 4
    assert delays == [2.0, 4.0, 8.0]
    with Image.open(assets[0].image_path) as img:
        assert img.getpixel((0, 0)) == (128, 128, 128)


def test_image_recovers_after_one_server_error(tmp_path):
    requests = []
    delays = []

    def handler(request):
        requests.append(request)
        if len(requests) == 1:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={"data": [{"b64_json": _png_b64()}]})

    assets = _run_with_seedream(tmp_path, handler, delays)

    assert len(requests) == 2
    assert delays == [2.0]
    with Image.open(assets[0].image_path) as img:
        assert img.size == (8, 6)
        assert img.getpixel((0, 0)) == (255, 0, 0)


def test_voice_failure_fails_the_run_and_stops_siblings(tmp_path):
    image = FakeImage(delay=0.5)
    speech = FakeSpeech(fail={3})
    orchestrator = AssetSynthesisOrchestrator(image, speech, FakeProbe(), max_image_concurrency=2)

    with pytest.raises(EmptyResponse):
        _run(orchestrator, tmp_path, 6)
    assert image.active == 0
    assert speech.active == 0


def test_progress_counts_completed_scenes(tmp_path):
    events = []
    reporter = ProgressReporter(events.append)
    _run(AssetSynthesisOrchestrator(FakeImage(), FakeSpeech(), FakeProbe()), tmp_path, 4, reporter)

    assert [e.percentage for e in events] == [27, 45, 62, 80]
    assert [e.current_scene for e in events] == [1, 2, 3, 4]
    assert all(e.total_scenes == 4 for e in events)
    assert all(e.stage == ProductionStage.GENERATE_ASSETS for e in events)


def test_cancellation_releases_everything(tmp_path):
    image = FakeImage(delay=30)
    speech = FakeSpeech(delay=30)
    orchestrator = AssetSynthesisOrchestrator(image, speech, FakeProbe(), max_image_concurrency=2)
    token = CancelToken()

    async def run():
        asyncio.get_running_loop().call_later(0.05, token.cancel, "test")
        return await orchestrator.generate(_project(tmp_path), _storyboard(5), None, token)

    started = time.monotonic()
    with pytest.raises(OperationCancelled):
        asyncio.run(run())
    assert time.monotonic() - started < 5
    assert image.active == 0
    assert speech.active == 0
    # Only the permitted image calls ever started.
    assert len(image.calls) == 2


def test_already_cancelled_token_starts_nothing(tmp_path):
    image = FakeImage()
    token = CancelToken()
    token.cancel()

    with pytest.raises(OperationCancelled):
        _run(AssetSynthesisOrchestrator(image, FakeSpeech(), FakeProbe()), tmp_path, 3, token=token)
    assert image.calls == []
