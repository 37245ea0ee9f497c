import io
import logging
import os
import re
from pathlib import Path

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

PLACEHOLDER_COLOR = (128, 128, 128)

# Characters Windows/posix refuse in file names, plus control characters.
_INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def write_bytes(path, data: bytes):
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)


def write_text(path, text: str, encoding: str = "utf-8"):
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", encoding=encoding, newline="\n") as f:
        f.write(text)


def scene_file(directory: Path, scene_index: int, ext: str) -> Path:
    return Path(directory) / f"scene_{scene_index:03d}.{ext}"


def sanitize_filename(name: str) -> str:
    sanitized = _INVALID_FILENAME_CHARS.sub("", name).strip()
    return sanitized or "output"


def to_png(data: bytes) -> bytes:
    """Re-encode provider image bytes as an RGB PNG.

    Providers hand back WebP/JPEG/RGBA PNG depending on the model; ffmpeg's
    image loop is happiest with plain RGB PNGs. Transparent pixels are
    flattened onto white. Raises ``ValueError`` for bytes Pillow cannot read.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            if img.format == "PNG" and img.mode == "RGB":
                return data
            if img.mode in ("RGBA", "LA", "P"):
                img = img.convert("RGBA")
                background = Image.new("RGB", img.size, (255, 255, 255))
                background.paste(img, mask=img.split()[-1])
                img = background
            elif img.mode != "RGB":
                img = img.convert("RGB")
            buf = io.BytesIO()
            img.save(buf, format="PNG")
            return buf.getvalue()
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"unreadable image data: {e}") from e


def placeholder_png(width: int, height: int) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), PLACEHOLDER_COLOR).save(buf, format="PNG")
    return buf.getvalue()


def write_placeholder_image(path, width: int, height: int) -> Path:
    write_bytes(path, placeholder_png(width, height))
    logger.warning(f"Wrote placeholder image: {path}")
    return Path(path)
