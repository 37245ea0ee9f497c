import json
import logging
from typing import Optional

from pydantic import ValidationError

from .capabilities import TextGenerator
from .errors import EmptyResponse, MalformedOutput
from .models import Scene, Storyboard, StoryboardDraft
from .prompts import build_system_prompt

logger = logging.getLogger(__name__)

PROVIDER = "storyboard"


def extract_json(content: str) -> str:
    """Strip an optional markdown code fence around the model's answer."""
    content = content.strip()
    if content.startswith("```json"):
        content = content[7:]
    elif content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    return content.strip()


def _normalize_keys(raw: dict) -> dict:
    # Models are inconsistent about key casing ("SpeechText", "speechtext", ...).
    canonical = {"scenes": "scenes", "speechtext": "speechText", "visualprompt": "visualPrompt"}

    def fix(value):
        if isinstance(value, dict):
            return {canonical.get(k.lower(), k) if isinstance(k, str) else k: fix(v) for k, v in value.items()}
        if isinstance(value, list):
            return [fix(v) for v in value]
        return value

    return fix(raw)


def compose_visual_prompt(style: str, character: str, scene_prompt: str) -> str:
    parts = [style]
    if character:
        parts.append(character)
    parts.append(scene_prompt)
    return ", ".join(parts)


def parse_storyboard(content: str, style: str, character: str = "") -> Storyboard:
    try:
        raw = json.loads(extract_json(content))
    except json.JSONDecodeError as e:
        raise MalformedOutput(PROVIDER, f"answer is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise MalformedOutput(PROVIDER, "answer is not a JSON object")
    try:
        draft = StoryboardDraft.model_validate(_normalize_keys(raw))
    except ValidationError as e:
        raise MalformedOutput(PROVIDER, f"answer does not match the scene schema: {e}") from e
    if not draft.scenes:
        raise EmptyResponse(PROVIDER, "answer has an empty scene list")

    scenes = [
        Scene(
            index=i + 1,
            speech_text=d.speech_text,
            visual_prompt=compose_visual_prompt(style, character, d.visual_prompt),
        )
        for i, d in enumerate(draft.scenes)
    ]
    return Storyboard(base_visual_style=style, scenes=scenes)


class StoryboardService:
    def __init__(self, llm: TextGenerator, default_style: str, character_prompt: str = ""):
        self._llm = llm
        self._default_style = default_style
        self._character_prompt = character_prompt

    async def parse(self, raw_text: str, base_visual_style: Optional[str] = None) -> Storyboard:
        style = base_visual_style or self._default_style
        logger.info(f"Parsing storyboard, visual style: {style}")
        if self._character_prompt:
            logger.info(f"Character prompt: {self._character_prompt}")

        content = await self._llm.complete(build_system_prompt(style, self._character_prompt), raw_text)
        storyboard = parse_storyboard(content, style, self._character_prompt)
        logger.info(f"Storyboard parsed with {len(storyboard.scenes)} scenes")
        return storyboard

    async def aclose(self) -> None:
        close = getattr(self._llm, "aclose", None)
        if close is not None:
            await close()
