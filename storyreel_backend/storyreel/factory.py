import logging
from pathlib import Path

from . import settings
from .assets import AssetSynthesisOrchestrator
from .composer import VideoComposer
from .images import SeedreamImageClient
from .llm import LlmClient
from .orchestrator import ProductionOrchestrator
from .probe import MutagenDurationProbe
from .speech import MiniMaxSpeechClient, VolcengineTtsClient
from .storyboard import StoryboardService

logger = logging.getLogger(__name__)


def build_speech_client():
    if settings.TTS_PROVIDER == "volcengine":
        return VolcengineTtsClient()
    if settings.TTS_PROVIDER != "minimax":
        raise ValueError(f"Unknown TTS_PROVIDER: {settings.TTS_PROVIDER!r} (expected 'minimax' or 'volcengine')")
    return MiniMaxSpeechClient()


def build_orchestrator() -> ProductionOrchestrator:
    """Wire the production pipeline from environment settings."""
    speech = build_speech_client()
    logger.info(f"Building orchestrator: tts={speech.provider}, image concurrency={settings.IMAGE_MAX_CONCURRENCY}")

    storyboard = StoryboardService(
        LlmClient(),
        default_style=settings.DEFAULT_VISUAL_STYLE,
        character_prompt=settings.DEFAULT_CHARACTER_PROMPT,
    )
    assets = AssetSynthesisOrchestrator(
        image=SeedreamImageClient(),
        speech=speech,
        probe=MutagenDurationProbe(),
        max_image_concurrency=settings.IMAGE_MAX_CONCURRENCY,
        placeholder_size=(settings.VIDEO_WIDTH, settings.VIDEO_HEIGHT),
    )
    composer = VideoComposer(
        ffmpeg_binary=settings.resolve_ffmpeg_binary(),
        temp_root=Path(settings.TEMP_DIR),
        width=settings.VIDEO_WIDTH,
        height=settings.VIDEO_HEIGHT,
        fps=settings.FPS,
        crf=settings.VIDEO_QUALITY,
        max_parallel_segments=settings.SEGMENT_WORKERS,
    )
    return ProductionOrchestrator(storyboard, assets, composer)
