"""Command line runner for a single production."""
import asyncio
import logging
import uuid
from pathlib import Path
from typing import Optional

import typer

from . import __version__, settings
from .errors import PipelineError
from .models import ProductionProgress, VideoProject

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="storyreel",
    help="Turn a written story into a narrated, subtitled video",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    if value:
        typer.echo(f"storyreel version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True, help="Show version and exit"
    ),
) -> None:
    """Storyreel - story text to narrated video."""


def print_progress(p: ProductionProgress) -> None:
    scene = f" ({p.current_scene}/{p.total_scenes})" if p.total_scenes else ""
    typer.echo(f"[{p.percentage:3d}%] {p.stage.value} - {p.step}{scene}")


@app.command()
def check() -> None:
    """Report which provider keys are configured."""
    ok = settings.has_all_keys()
    typer.echo(f"TTS provider: {settings.TTS_PROVIDER}")
    typer.echo(f"ffmpeg: {settings.resolve_ffmpeg_binary()}")
    typer.echo("All API keys present" if ok else "Missing API keys, see log above")
    if not ok:
        raise typer.Exit(1)


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind address"),
    port: int = typer.Option(8000, help="Bind port"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
) -> None:
    """Run the HTTP job API."""
    import uvicorn

    uvicorn.run("storyreel.app:app", host=host, port=port, reload=reload)


@app.command()
def produce(
    story_file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="UTF-8 story text"),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Video title; defaults to the file name"),
    style: Optional[str] = typer.Option(None, "--style", "-s", help="Base visual style for every scene"),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", "-o", help="Where scene files and the video go"),
) -> None:
    """Produce a video from STORY_FILE."""
    story = story_file.read_text(encoding="utf-8")
    if not story.strip():
        typer.echo("Story file is empty", err=True)
        raise typer.Exit(1)

    job_id = uuid.uuid4().hex[:8]
    project = VideoProject(
        project_id=job_id,
        title=title or story_file.stem,
        output_directory=output_dir or Path(settings.OUTPUT_DIR) / job_id,
        raw_story_text=story,
        base_visual_style=style,
    )

    from .factory import build_orchestrator
    try:
        orchestrator = build_orchestrator()
    except (RuntimeError, ValueError) as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(2)

    async def run() -> Path:
        try:
            return await orchestrator.produce(project, print_progress)
        finally:
            await orchestrator.aclose()

    try:
        final_path = asyncio.run(run())
    except PipelineError as e:
        typer.echo(f"Production failed ({e.kind.value}): {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Video: {final_path}")


if __name__ == "__main__":
    app()
