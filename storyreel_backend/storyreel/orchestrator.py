import logging
import time
from pathlib import Path
from typing import Optional, Union

from langgraph.graph import END, StateGraph

from .assets import AssetSynthesisOrchestrator
from .cancellation import CancelToken
from .capabilities import Composer
from .errors import PipelineError
from .media import sanitize_filename
from .models import OrchestrationState, ProductionStage, VideoProject
from .progress import ProgressReporter, ProgressSink
from .storyboard import StoryboardService
from .subtitles import write_srt

logger = logging.getLogger(__name__)

SUBTITLE_FILENAME = "subtitles.srt"


class ProductionOrchestrator:
    """Runs parse -> assets -> subtitles -> compose for one project.

    Each run gets its own compiled graph whose nodes close over the run's
    progress reporter and cancel token, so the graph state only carries data.
    """

    def __init__(self, storyboard_service: StoryboardService, assets: AssetSynthesisOrchestrator, composer: Composer):
        self.storyboard_service = storyboard_service
        self.assets = assets
        self.composer = composer

    def build_graph(self, reporter: ProgressReporter, token: CancelToken, tracker: dict):
        def enter(stage: ProductionStage, step: str, percentage: int, **extra):
            token.raise_if_cancelled()
            tracker["stage"] = stage
            logger.info(f"Stage {stage.value}: {step}")
            reporter.report(stage, step, percentage, **extra)

        async def node_parse(state: OrchestrationState) -> dict:
            enter(ProductionStage.PARSE, "Parsing story into scenes", 5)
            storyboard = await token.guard(
                self.storyboard_service.parse(state.project.raw_story_text, state.project.base_visual_style)
            )
            logger.info(f"Storyboard for job {state.job_id} has {len(storyboard.scenes)} scenes")
            return {"storyboard": storyboard, "stage": ProductionStage.PARSE}

        async def node_assets(state: OrchestrationState) -> dict:
            assert state.storyboard
            total = len(state.storyboard.scenes)
            enter(ProductionStage.GENERATE_ASSETS, f"Generating assets for {total} scenes", 10,
                  current_scene=0, total_scenes=total)
            assets = await self.assets.generate(state.project, state.storyboard, reporter, token)
            return {"assets": assets, "stage": ProductionStage.GENERATE_ASSETS}

        async def node_subtitles(state: OrchestrationState) -> dict:
            enter(ProductionStage.GENERATE_SUBTITLES, "Building subtitles", 80)
            srt_path = Path(state.project.output_directory) / SUBTITLE_FILENAME
            await token.guard(write_srt(state.assets, srt_path))
            return {"subtitle_path": srt_path, "stage": ProductionStage.GENERATE_SUBTITLES}

        async def node_compose(state: OrchestrationState) -> dict:
            assert state.subtitle_path
            enter(ProductionStage.COMPOSE_VIDEO, "Composing video", 85)
            output_path = Path(state.project.output_directory) / f"{sanitize_filename(state.project.title)}.mp4"
            final_path = await self.composer.compose(state.assets, state.subtitle_path, output_path, token)
            return {"final_path": final_path, "stage": ProductionStage.COMPOSE_VIDEO}

        g = StateGraph(OrchestrationState)
        g.add_node("parse", node_parse)
        g.add_node("generate_assets", node_assets)
        g.add_node("generate_subtitles", node_subtitles)
        g.add_node("compose_video", node_compose)
        g.set_entry_point("parse")
        g.add_edge("parse", "generate_assets")
        g.add_edge("generate_assets", "generate_subtitles")
        g.add_edge("generate_subtitles", "compose_video")
        g.add_edge("compose_video", END)
        return g.compile()

    async def produce(
        self,
        project: VideoProject,
        progress: Union[ProgressReporter, ProgressSink, None] = None,
        token: Optional[CancelToken] = None,
    ) -> Path:
        reporter = progress if isinstance(progress, ProgressReporter) else ProgressReporter(progress)
        token = token or CancelToken()
        job_id = project.project_id
        tracker = {"stage": ProductionStage.PARSE}
        started = time.monotonic()

        Path(project.output_directory).mkdir(parents=True, exist_ok=True)
        logger.info(f"Starting production {job_id} '{project.title}' in {project.output_directory}")
        graph = self.build_graph(reporter, token, tracker)
        try:
            result = await graph.ainvoke(OrchestrationState(job_id=job_id, project=project))
        except Exception as e:
            stage = tracker["stage"].value
            logger.error(f"Production {job_id} failed at {stage}: {e}")
            if isinstance(e, PipelineError):
                if not e.stage:
                    e.stage = stage
            else:
                e.add_note(f"production stage: {stage}")
            reporter.report(ProductionStage.FAILED, f"Failed at {stage}: {e}", reporter.percentage)
            raise

        final = OrchestrationState.model_validate(result)
        assert final.final_path
        reporter.report(ProductionStage.DONE, "Done", 100)
        elapsed = time.monotonic() - started
        logger.info(f"Production {job_id} finished in {elapsed:.1f}s: {final.final_path}")
        return Path(final.final_path)

    async def aclose(self) -> None:
        """Close provider clients. Every close is attempted; the first failure is re-raised."""
        first_error: Optional[BaseException] = None
        for part in (self.storyboard_service, self.assets, self.composer):
            close = getattr(part, "aclose", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning(f"Closing {type(part).__name__} failed: {e}")
                first_error = first_error or e
        if first_error is not None:
            raise first_error
