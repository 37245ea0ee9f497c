"""Segment-based video assembly with ffmpeg.

1. one MPEG-TS segment per scene: the still image held for exactly the
   scene's audio duration, letterboxed to the canonical frame;
2. stream-copy concat of the segments in scene order;
3. a single encode that burns the captions in.

Everything intermediate lives in a per-run temp directory that is removed on
every exit path.
"""
import asyncio
import logging
import shutil
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence

from .cancellation import CancelToken
from .errors import CleanupFailure, CompositionFailure, MissingMedia
from .media import write_text
from .models import GeneratedAsset

logger = logging.getLogger(__name__)

DEFAULT_SUBTITLE_STYLE = "FontSize=24,PrimaryColour=&HFFFFFF,OutlineColour=&H000000,Outline=2"

Runner = Callable[[List[str], str], Awaitable[None]]


async def run_ffmpeg(args: List[str], step: str) -> None:
    logger.debug(f"Running FFmpeg ({step}): {' '.join(args)}")
    try:
        proc = await asyncio.create_subprocess_exec(
            *args, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        raise CompositionFailure(step, f"could not start {args[0]}: {e}") from e
    try:
        _, stderr = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    if proc.returncode != 0:
        error_msg = stderr.decode("utf-8", errors="ignore")[-2000:]
        logger.error(f"FFmpeg {step} failed with return code {proc.returncode}")
        raise CompositionFailure(step, error_msg, returncode=proc.returncode)


def format_seconds(td: timedelta) -> str:
    return f"{td.total_seconds():.6f}"


def concat_line(path: Path) -> str:
    unix_path = str(Path(path).resolve()).replace("\\", "/")
    return "file '" + unix_path.replace("'", "'\\''") + "'"


def escape_filter_path(path: Path) -> str:
    # Quoting rules of the subtitles filter argument.
    return str(path).replace("\\", "/").replace(":", "\\:").replace("'", "'\\''")


class VideoComposer:
    def __init__(
        self,
        ffmpeg_binary: str,
        temp_root: Path,
        width: int = 1920,
        height: int = 1080,
        fps: int = 24,
        crf: int = 23,
        max_parallel_segments: int = 1,
        subtitle_style: str = DEFAULT_SUBTITLE_STYLE,
        runner: Runner = run_ffmpeg,
    ):
        self.ffmpeg_binary = ffmpeg_binary
        self.temp_root = Path(temp_root)
        self.width = width
        self.height = height
        self.fps = fps
        self.crf = crf
        self.max_parallel_segments = max(1, max_parallel_segments)
        self.subtitle_style = subtitle_style
        self._run = runner

    def segment_args(self, asset: GeneratedAsset, segment_path: Path) -> List[str]:
        w, h = self.width, self.height
        duration = format_seconds(asset.audio_duration)
        return [
            self.ffmpeg_binary, "-y",
            "-loop", "1", "-t", duration, "-i", str(asset.image_path),
            "-i", str(asset.audio_path),
            "-vf", f"scale={w}:{h}:force_original_aspect_ratio=decrease,pad={w}:{h}:(ow-iw)/2:(oh-ih)/2,format=yuv420p",
            "-c:v", "libx264", "-crf", str(self.crf), "-r", str(self.fps),
            "-c:a", "aac",
            "-t", duration, "-shortest",
            "-f", "mpegts", str(segment_path),
        ]

    def concat_args(self, list_path: Path, merged_path: Path) -> List[str]:
        return [
            self.ffmpeg_binary, "-y",
            "-f", "concat", "-safe", "0", "-i", str(list_path),
            "-c", "copy", "-movflags", "+faststart",
            str(merged_path),
        ]

    def burn_args(self, merged_path: Path, subtitle_path: Path, output_path: Path) -> List[str]:
        vf = f"subtitles='{escape_filter_path(subtitle_path)}':force_style='{self.subtitle_style}'"
        return [
            self.ffmpeg_binary, "-y",
            "-i", str(merged_path),
            "-vf", vf,
            "-c:v", "libx264", "-crf", str(self.crf),
            "-c:a", "aac", "-movflags", "+faststart",
            str(output_path),
        ]

    async def compose(
        self,
        assets: Sequence[GeneratedAsset],
        subtitle_path: Path,
        output_path: Path,
        token: Optional[CancelToken] = None,
    ) -> Path:
        token = token or CancelToken()
        ordered = sorted(assets, key=lambda a: a.scene_index)
        if not ordered:
            raise CompositionFailure("compose", "no scenes to compose")
        self._check_inputs(ordered, Path(subtitle_path))

        temp_dir = self.temp_root / uuid.uuid4().hex[:8]
        temp_dir.mkdir(parents=True, exist_ok=True)
        try:
            logger.info(f"Composing video from {len(ordered)} scenes in {temp_dir}")
            segments = await self._render_segments(ordered, temp_dir, token)

            list_path = temp_dir / "concat_list.txt"
            await asyncio.to_thread(write_text, list_path, "\n".join(concat_line(p) for p in segments) + "\n")
            merged_path = temp_dir / "merged.mp4"
            await token.guard(self._run(self.concat_args(list_path, merged_path), "concat"))
            logger.info(f"Concatenated {len(segments)} segments: {merged_path}")

            output_path = Path(output_path)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            await token.guard(self._run(self.burn_args(merged_path, Path(subtitle_path), output_path), "burn subtitles"))
            logger.info(f"Video composed: {output_path}")
            return output_path
        finally:
            self._cleanup(temp_dir)

    def _check_inputs(self, assets: Sequence[GeneratedAsset], subtitle_path: Path) -> None:
        for asset in assets:
            for path in (asset.image_path, asset.audio_path):
                if not Path(path).is_file():
                    raise MissingMedia(path)
        if not subtitle_path.is_file():
            raise MissingMedia(subtitle_path)

    async def _render_segments(self, ordered: Sequence[GeneratedAsset], temp_dir: Path, token: CancelToken) -> List[Path]:
        segments = [temp_dir / f"segment_{i:03d}.ts" for i in range(len(ordered))]
        limiter = asyncio.Semaphore(self.max_parallel_segments)

        async def render(i: int) -> None:
            asset = ordered[i]
            async with limiter:
                logger.debug(f"Rendering segment {i + 1}/{len(ordered)}: {asset.audio_duration}")
                await token.guard(self._run(self.segment_args(asset, segments[i]), f"segment {asset.scene_index}"))
                logger.info(f"Segment rendered: {segments[i].name}")

        if self.max_parallel_segments == 1:
            for i in range(len(ordered)):
                await render(i)
        else:
            tasks = [asyncio.ensure_future(render(i)) for i in range(len(ordered))]
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                for t in tasks:
                    t.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
        return segments

    def _cleanup(self, temp_dir: Path) -> None:
        if not temp_dir.exists():
            return
        try:
            shutil.rmtree(temp_dir)
            logger.debug(f"Removed temp dir {temp_dir}")
        except OSError as e:
            logger.warning(str(CleanupFailure(f"could not remove {temp_dir}: {e}")))
