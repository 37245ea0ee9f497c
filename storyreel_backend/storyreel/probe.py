import asyncio
import logging
from datetime import timedelta
from pathlib import Path

import mutagen
from mutagen import MutagenError

from .errors import MalformedOutput, MissingMedia

logger = logging.getLogger(__name__)


def read_duration(audio_path: Path) -> timedelta:
    """Playtime from the container/frame headers, to the microsecond."""
    audio_path = Path(audio_path)
    if not audio_path.is_file():
        raise MissingMedia(audio_path)
    try:
        audio = mutagen.File(str(audio_path))
    except MutagenError as e:
        raise MalformedOutput("probe", f"cannot read {audio_path.name}: {e}") from e
    if audio is None or getattr(audio, "info", None) is None:
        raise MalformedOutput("probe", f"unrecognised audio format: {audio_path.name}")

    length = audio.info.length
    if not length or length <= 0:
        raise MalformedOutput("probe", f"audio has no playtime: {audio_path.name}")
    duration = timedelta(seconds=length)
    logger.debug(f"Audio duration {duration} - {audio_path.name}")
    return duration


class MutagenDurationProbe:
    async def duration(self, audio_path: Path) -> timedelta:
        return await asyncio.to_thread(read_duration, audio_path)
