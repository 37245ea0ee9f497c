"""Capability contracts the orchestrator is composed from.

Each has one implementation chosen in ``factory.build_orchestrator``; tests
plug in their own.
"""
from datetime import timedelta
from pathlib import Path
from typing import Protocol, Sequence

from .cancellation import CancelToken
from .models import GeneratedAsset


class TextGenerator(Protocol):
    async def complete(self, system_prompt: str, user_prompt: str) -> str: ...


class ImageGenerator(Protocol):
    async def generate(self, prompt: str, output_path: Path) -> Path: ...


class SpeechGenerator(Protocol):
    # Extension (without dot) of the audio files this generator writes.
    audio_format: str

    async def generate(self, text: str, output_path: Path) -> Path: ...


class DurationProbe(Protocol):
    async def duration(self, audio_path: Path) -> timedelta: ...


class Composer(Protocol):
    async def compose(
        self,
        assets: Sequence[GeneratedAsset],
        subtitle_path: Path,
        output_path: Path,
        token: CancelToken,
    ) -> Path: ...
