from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


class ProductionStage(str, Enum):
    PARSE = "parse"
    GENERATE_ASSETS = "generate_assets"
    GENERATE_SUBTITLES = "generate_subtitles"
    COMPOSE_VIDEO = "compose_video"
    DONE = "done"
    FAILED = "failed"


class Scene(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=1, description="1-based scene position")
    speech_text: str
    visual_prompt: str = Field(..., description="Style, character and scene description, already joined")


class Storyboard(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_visual_style: str
    scenes: List[Scene]


class GeneratedAsset(BaseModel):
    model_config = ConfigDict(frozen=True)

    scene_index: int = Field(..., ge=1)
    image_path: Path
    audio_path: Path
    audio_duration: timedelta = Field(..., description="Probed playtime of audio_path")
    speech_text: str


class VideoProject(BaseModel):
    model_config = ConfigDict(frozen=True)

    project_id: str
    title: str
    output_directory: Path
    raw_story_text: str
    base_visual_style: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ProductionProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: ProductionStage
    step: str
    percentage: int = Field(..., ge=0, le=100)
    current_scene: Optional[int] = None
    total_scenes: Optional[int] = None


class CaptionEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=1)
    start: timedelta
    end: timedelta
    text: str


# Wire schema of the breakdown collaborator's answer
class SceneDraft(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    speech_text: str = Field(..., alias="speechText")
    visual_prompt: str = Field(..., alias="visualPrompt")


class StoryboardDraft(BaseModel):
    scenes: List[SceneDraft] = Field(default_factory=list)


class OrchestrationState(BaseModel):
    job_id: str
    project: VideoProject
    stage: ProductionStage = ProductionStage.PARSE
    storyboard: Optional[Storyboard] = None
    assets: List[GeneratedAsset] = Field(default_factory=list)
    subtitle_path: Optional[Path] = None
    final_path: Optional[Path] = None


class ProductionRequest(BaseModel):
    title: str = Field(..., min_length=1)
    story_text: str = Field(..., min_length=1)
    visual_style: Optional[str] = None
