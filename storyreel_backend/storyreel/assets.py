"""Per-scene image + voice synthesis.

All scenes fan out at once. Inside a scene the image and voice legs run
concurrently; only the image leg is throttled. A failed image degrades to a
gray placeholder, a failed voice track fails the whole run.
"""
import asyncio
import logging
from pathlib import Path
from typing import Awaitable, List, Optional, Tuple

from .cancellation import CancelToken
from .capabilities import DurationProbe, ImageGenerator, SpeechGenerator
from .errors import OperationCancelled, ProviderError
from .media import scene_file, write_placeholder_image, write_text
from .models import GeneratedAsset, ProductionStage, Scene, Storyboard, VideoProject
from .progress import ProgressReporter

logger = logging.getLogger(__name__)

ASSETS_START = 10
ASSETS_SPAN = 70


async def gather_or_cancel(*aws: Awaitable) -> list:
    """Like ``asyncio.gather`` but a failure cancels and awaits the siblings."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def scene_manifest(scene: Scene) -> str:
    return f"[Visual Prompt]\n{scene.visual_prompt}\n\n[Speech Text]\n{scene.speech_text}"


class AssetSynthesisOrchestrator:
    def __init__(
        self,
        image: ImageGenerator,
        speech: SpeechGenerator,
        probe: DurationProbe,
        max_image_concurrency: int = 3,
        placeholder_size: Tuple[int, int] = (1920, 1080),
    ):
        self._image = image
        self._speech = speech
        self._probe = probe
        self.max_image_concurrency = max(1, max_image_concurrency)
        self.placeholder_size = placeholder_size

    async def generate(
        self,
        project: VideoProject,
        storyboard: Storyboard,
        reporter: Optional[ProgressReporter] = None,
        token: Optional[CancelToken] = None,
    ) -> List[GeneratedAsset]:
        reporter = reporter or ProgressReporter()
        token = token or CancelToken()
        scenes = storyboard.scenes
        total = len(scenes)
        output_dir = Path(project.output_directory)
        # One semaphore per run, bound to the running loop.
        image_slots = asyncio.Semaphore(self.max_image_concurrency)
        completed = 0

        async def run_scene(scene: Scene) -> GeneratedAsset:
            nonlocal completed
            asset = await self._synthesize_scene(scene, output_dir, image_slots, token)
            completed += 1
            reporter.report(
                ProductionStage.GENERATE_ASSETS,
                f"Scene {scene.index} ready ({completed}/{total})",
                ASSETS_START + ASSETS_SPAN * completed // total,
                current_scene=completed,
                total_scenes=total,
            )
            return asset

        logger.info(f"Generating assets for {total} scenes (image concurrency {self.max_image_concurrency})")
        assets = await gather_or_cancel(*(run_scene(s) for s in scenes))
        return sorted(assets, key=lambda a: a.scene_index)

    async def _synthesize_scene(
        self, scene: Scene, output_dir: Path, image_slots: asyncio.Semaphore, token: CancelToken
    ) -> GeneratedAsset:
        token.raise_if_cancelled()
        await asyncio.to_thread(write_text, scene_file(output_dir, scene.index, "txt"), scene_manifest(scene))

        image_path = scene_file(output_dir, scene.index, "png")
        audio_path = scene_file(output_dir, scene.index, self._speech.audio_format)
        image_path, audio_path = await gather_or_cancel(
            self._image_leg(scene, image_path, image_slots, token),
            self._voice_leg(scene, audio_path, token),
        )

        duration = await token.guard(self._probe.duration(audio_path))
        logger.info(f"Scene {scene.index} assets ready, audio {duration.total_seconds():.3f}s")
        return GeneratedAsset(
            scene_index=scene.index,
            image_path=image_path,
            audio_path=audio_path,
            audio_duration=duration,
            speech_text=scene.speech_text,
        )

    async def _image_leg(
        self, scene: Scene, image_path: Path, image_slots: asyncio.Semaphore, token: CancelToken
    ) -> Path:
        async with image_slots:
            token.raise_if_cancelled()
            try:
                return await token.guard(self._image.generate(scene.visual_prompt, image_path))
            except OperationCancelled:
                raise
            except ProviderError as e:
                logger.warning(f"Image generation failed for scene {scene.index}, using placeholder: {e}")
            except Exception as e:
                logger.warning(
                    f"Image generation for scene {scene.index} raised {type(e).__name__}, using placeholder: {e}"
                )
        width, height = self.placeholder_size
        return await asyncio.to_thread(write_placeholder_image, image_path, width, height)

    async def _voice_leg(self, scene: Scene, audio_path: Path, token: CancelToken) -> Path:
        try:
            return await token.guard(self._speech.generate(scene.speech_text, audio_path))
        except ProviderError as e:
            logger.error(f"Voice generation failed for scene {scene.index}: {e}")
            raise

    async def aclose(self) -> None:
        for client in (self._image, self._speech):
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()
