"""Caption timeline anchored to measured audio durations.

Each scene owns exactly ``audio_duration`` of the timeline. Inside a scene the
speech text is split into sentences and the time is shared out in proportion
to sentence length. The last sentence always ends on the scene boundary, so
rounding never accumulates across sentences or scenes.
"""
import asyncio
import logging
from datetime import timedelta
from pathlib import Path
from typing import Iterable, List

from .media import write_text
from .models import CaptionEntry, GeneratedAsset

logger = logging.getLogger(__name__)

SEPARATORS = frozenset("。？！，；：.?!,;:\n\r")
CLOSING_MARKS = frozenset("”’\"')）》")


def split_sentences(text: str) -> List[str]:
    sentences: List[str] = []
    if not text or not text.strip():
        return sentences

    current = []
    i = 0
    while i < len(text):
        ch = text[i]
        current.append(ch)
        i += 1
        if ch not in SEPARATORS:
            continue
        # Keep trailing quotes/brackets with the sentence they close.
        while i < len(text) and text[i] in CLOSING_MARKS:
            current.append(text[i])
            i += 1
        fragment = "".join(current).strip()
        if fragment:
            sentences.append(fragment)
        current = []

    remaining = "".join(current).strip()
    if remaining:
        sentences.append(remaining)
    return sentences


def build_timeline(assets: Iterable[GeneratedAsset]) -> List[CaptionEntry]:
    entries: List[CaptionEntry] = []
    clock = timedelta(0)

    for asset in sorted(assets, key=lambda a: a.scene_index):
        scene_start = clock
        scene_end = scene_start + asset.audio_duration

        sentences = split_sentences(asset.speech_text)
        if not sentences:
            # Nothing to show, but the scene still occupies its slot.
            sentences = [""]
        total_chars = sum(len(s) for s in sentences) or 1

        start = scene_start
        for j, sentence in enumerate(sentences):
            if j == len(sentences) - 1:
                end = scene_end
            else:
                end = start + asset.audio_duration * (len(sentence) / total_chars)
            entries.append(CaptionEntry(index=len(entries) + 1, start=start, end=end, text=sentence))
            logger.debug(f"Caption {len(entries)}: {format_srt_time(start)} --> {format_srt_time(end)} | {sentence}")
            start = end

        clock = scene_end

    return entries


def format_srt_time(td: timedelta) -> str:
    total_ms = td // timedelta(milliseconds=1)
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    seconds, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d},{millis:03d}"


def render_srt(entries: Iterable[CaptionEntry]) -> str:
    blocks = []
    for e in entries:
        blocks.append(f"{e.index}\n{format_srt_time(e.start)} --> {format_srt_time(e.end)}\n{e.text}\n\n")
    return "".join(blocks)


async def write_srt(assets: Iterable[GeneratedAsset], output_path: Path) -> Path:
    assets = list(assets)
    entries = build_timeline(assets)
    total = sum((a.audio_duration for a in assets), timedelta(0))
    logger.info(f"Writing {len(entries)} captions for {len(assets)} scenes")
    # BOM for legacy subtitle renderers
    await asyncio.to_thread(write_text, output_path, render_srt(entries), "utf-8-sig")
    logger.info(f"Subtitles written: {output_path}, total duration {total}")
    return Path(output_path)
