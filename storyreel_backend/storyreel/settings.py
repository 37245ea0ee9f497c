import os
import shutil
from dotenv import load_dotenv
import logging

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Load .env file if it exists (for local development)
env_path = os.path.join(os.path.dirname(__file__), "..", ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)
    logger.info("Loaded .env file for local development")
else:
    logger.info("No .env file found, using environment variables")


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _optional_int(name: str):
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else None


# Story breakdown (OpenAI-compatible chat completions)
LLM_API_KEY = os.getenv("LLM_API_KEY", "")
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "https://ark.cn-beijing.volces.com/api/v3")
LLM_MODEL = os.getenv("LLM_MODEL", "doubao-seed-1-6-251015")
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.7"))
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "4000"))

# Image synthesis (Seedream)
IMAGE_API_KEY = os.getenv("IMAGE_API_KEY", "")
IMAGE_ENDPOINT = os.getenv("IMAGE_ENDPOINT", "https://ark.cn-beijing.volces.com/api/v3/images/generations")
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "doubao-seedream-4-5-251128")
IMAGE_SIZE = os.getenv("IMAGE_SIZE", "2K")
IMAGE_RESPONSE_FORMAT = os.getenv("IMAGE_RESPONSE_FORMAT", "url")
IMAGE_SEED = _optional_int("IMAGE_SEED")
IMAGE_WATERMARK = _flag("IMAGE_WATERMARK", True)
IMAGE_MAX_CONCURRENCY = int(os.getenv("IMAGE_MAX_CONCURRENCY", "3"))

# Voice synthesis: "minimax" or "volcengine"
TTS_PROVIDER = os.getenv("TTS_PROVIDER", "minimax").strip().lower()

MINIMAX_API_KEY = os.getenv("MINIMAX_API_KEY", "")
MINIMAX_ENDPOINT = os.getenv("MINIMAX_ENDPOINT", "https://api.minimaxi.com/v1/t2a_v2")
MINIMAX_MODEL = os.getenv("MINIMAX_MODEL", "speech-2.6-hd")
MINIMAX_VOICE_ID = os.getenv("MINIMAX_VOICE_ID", "male-qn-qingse")
MINIMAX_SPEED = float(os.getenv("MINIMAX_SPEED", "1.0"))
MINIMAX_VOLUME = float(os.getenv("MINIMAX_VOLUME", "1.0"))
MINIMAX_PITCH = int(os.getenv("MINIMAX_PITCH", "0"))
MINIMAX_EMOTION = os.getenv("MINIMAX_EMOTION", "").strip() or None
MINIMAX_SAMPLE_RATE = int(os.getenv("MINIMAX_SAMPLE_RATE", "32000"))
MINIMAX_BITRATE = int(os.getenv("MINIMAX_BITRATE", "128000"))
MINIMAX_FORMAT = os.getenv("MINIMAX_FORMAT", "mp3")
MINIMAX_CHANNEL = int(os.getenv("MINIMAX_CHANNEL", "1"))

VOLC_TTS_APP_ID = os.getenv("VOLC_TTS_APP_ID", "")
VOLC_TTS_ACCESS_TOKEN = os.getenv("VOLC_TTS_ACCESS_TOKEN", "")
VOLC_TTS_CLUSTER = os.getenv("VOLC_TTS_CLUSTER", "")
VOLC_TTS_ENDPOINT = os.getenv("VOLC_TTS_ENDPOINT", "https://openspeech.bytedance.com/api/v1/tts")
VOLC_TTS_VOICE_TYPE = os.getenv("VOLC_TTS_VOICE_TYPE", "zh_female_qingxin")
VOLC_TTS_ENCODING = os.getenv("VOLC_TTS_ENCODING", "mp3")
VOLC_TTS_SPEED_RATIO = float(os.getenv("VOLC_TTS_SPEED_RATIO", "1.0"))
VOLC_TTS_VOLUME_RATIO = float(os.getenv("VOLC_TTS_VOLUME_RATIO", "1.0"))
VOLC_TTS_PITCH_RATIO = float(os.getenv("VOLC_TTS_PITCH_RATIO", "1.0"))
VOLC_TTS_USER_ID = os.getenv("VOLC_TTS_USER_ID", "default_user")

# Pipeline
DEFAULT_VISUAL_STYLE = os.getenv("DEFAULT_VISUAL_STYLE", "Cinematic, high quality, detailed, professional lighting")
DEFAULT_CHARACTER_PROMPT = os.getenv("DEFAULT_CHARACTER_PROMPT", "")
TEMP_DIR = os.getenv("TEMP_DIR", "./temp")
OUTPUT_DIR = os.getenv("OUTPUT_DIR", "./output")
FFMPEG_DIR = os.getenv("FFMPEG_DIR", "").strip()

VIDEO_WIDTH = int(os.getenv("VIDEO_WIDTH", "1920"))
VIDEO_HEIGHT = int(os.getenv("VIDEO_HEIGHT", "1080"))
FPS = int(os.getenv("FPS", "24"))
VIDEO_QUALITY = int(os.getenv("VIDEO_QUALITY", "23"))
SEGMENT_WORKERS = int(os.getenv("SEGMENT_WORKERS", "1"))

# CORS for the HTTP surface; comma separated, "*" when unset
_allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "").strip()
if _allowed_origins_env:
    ALLOWED_ORIGINS = [o.strip() for o in _allowed_origins_env.split(",") if o.strip()]
else:
    ALLOWED_ORIGINS = ["*"]


def resolve_ffmpeg_binary() -> str:
    """Pick the ffmpeg executable once; the composer receives the result."""
    if FFMPEG_DIR:
        for name in ("ffmpeg.exe", "ffmpeg"):
            candidate = os.path.join(os.path.abspath(FFMPEG_DIR), name)
            if os.path.isfile(candidate):
                logger.info(f"Using bundled ffmpeg: {candidate}")
                return candidate
        logger.warning(f"FFMPEG_DIR={FFMPEG_DIR} has no ffmpeg binary, falling back to PATH")
    found = shutil.which("ffmpeg")
    if not found:
        logger.warning("ffmpeg not found on PATH; composition will fail until it is installed")
        return "ffmpeg"
    return found


def speech_keys_present() -> bool:
    if TTS_PROVIDER == "volcengine":
        return all([VOLC_TTS_APP_ID, VOLC_TTS_ACCESS_TOKEN, VOLC_TTS_CLUSTER])
    return bool(MINIMAX_API_KEY)


def has_all_keys() -> bool:
    keys_present = all([LLM_API_KEY, IMAGE_API_KEY, speech_keys_present()])
    if not keys_present:
        missing = []
        if not LLM_API_KEY: missing.append("LLM_API_KEY")
        if not IMAGE_API_KEY: missing.append("IMAGE_API_KEY")
        if not speech_keys_present():
            if TTS_PROVIDER == "volcengine":
                missing.append("VOLC_TTS_APP_ID/VOLC_TTS_ACCESS_TOKEN/VOLC_TTS_CLUSTER")
            else:
                missing.append("MINIMAX_API_KEY")
        logger.warning(f"Missing API keys: {', '.join(missing)}")
    return keys_present
