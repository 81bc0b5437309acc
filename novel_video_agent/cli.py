#!/usr/bin/env python
"""
CLI interface for the novel video agent.

Each command runs one pipeline stage for a novel or chapter and prints
the outcome; `status` shows which stages are ready to run.
"""

import os
import sys
from typing import List, Optional

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from novel_video_agent.dependencies import STAGES
from novel_video_agent.errors import BatchResult, NovelAgentError, PreconditionError, is_transient
from novel_video_agent.pipeline import PipelineContext, build_context
from novel_video_agent.utils.config_loader import load_global_config
from novel_video_agent.utils.logger import get_logger, setup_logging

# Create Typer app
app = typer.Typer(
    name="nva",
    help="Novel Video Agent - turn a novel into narrated chapter videos",
    add_completion=False
)

console = Console()
logger = get_logger(__name__)


def get_context(config: Optional[str] = None, verbose: bool = False) -> PipelineContext:
    """Load configuration, set up logging and build the pipeline.

    Exits with status 1 when the configuration cannot be loaded.
    """
    try:
        cfg = load_global_config(config)  # Uses NVA_ENV when no path is given
    except ValueError as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        console.print("[yellow]Make sure NVA_ENV is set (alpha/prod) and run 'python initialize.py' first[/yellow]")
        sys.exit(1)

    setup_logging(level="DEBUG" if verbose else cfg["logging"]["level"],
                  log_file=cfg["logging"]["file"])
    return build_context(cfg)


def _fail(error: Exception) -> None:
    """Print a stage failure and exit non-zero."""
    if isinstance(error, PreconditionError):
        console.print(f"[yellow]Not ready for {error.stage}:[/yellow]")
        for item in error.missing:
            console.print(f"  - {item}")
    else:
        kind = "transient, retry may help" if is_transient(error) else "permanent"
        console.print(f"[red]{type(error).__name__} ({kind}): {error}[/red]")
    raise typer.Exit(code=1)


def _print_batch(result: BatchResult) -> None:
    console.print(f"[green]{len(result.records)} succeeded[/green], "
                  f"[red]{len(result.failures)} failed[/red]")
    for failure in result.failures:
        tag = "transient" if failure.transient else "permanent"
        console.print(f"  [red]{failure.unit}[/red] ({tag}): {failure.message}")
    if result.failures:
        raise typer.Exit(code=2)


ConfigOption = typer.Option(None, "--config", help="Config file path (default: config/global_$NVA_ENV.yaml)")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Verbose output")


@app.command()
def init(config: Optional[str] = ConfigOption):
    """Create directories and the database schema."""
    ctx = get_context(config)
    console.print(f"[green]Initialized database {ctx.cfg['paths']['database']}[/green]")
    console.print(f"[green]Blob storage at {ctx.cfg['paths']['storage_root']}[/green]")


@app.command()
def upload(
    path: str = typer.Argument(..., help="Novel text file"),
    user: str = typer.Option(..., "--user", "-u", help="Owner user ID"),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Upload a novel text file as a resource."""
    ctx = get_context(config, verbose)
    if not os.path.isfile(path):
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(code=1)
    with open(path, "rb") as f:
        data = f.read()
    try:
        resource = ctx.upload(user, os.path.basename(path), data)
    except NovelAgentError as e:
        _fail(e)
    console.print(f"[green]Resource {resource['id']}[/green] ({resource['file_size']} bytes)")


@app.command("create-novel")
def create_novel(
    resource_id: str = typer.Argument(..., help="Uploaded resource ID"),
    user: str = typer.Option(..., "--user", "-u", help="Owner user ID"),
    style: str = typer.Option("anime", "--style", help="anime, live or mixed"),
    narration_type: str = typer.Option("narration", "--type", help="narration or dialogue"),
    title: Optional[str] = typer.Option(None, "--title", help="Display title"),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Create a novel from an uploaded resource."""
    ctx = get_context(config, verbose)
    try:
        novel = ctx.create_novel(resource_id, user, style=style, narration_type=narration_type, title=title)
    except NovelAgentError as e:
        _fail(e)
    console.print(f"[green]Novel {novel['id']}[/green] ({novel['title']})")


@app.command()
def split(
    novel_id: str = typer.Argument(..., help="Novel ID"),
    chapters: Optional[int] = typer.Option(None, "--chapters", "-n", help="Target chapter count"),
    replace: bool = typer.Option(False, "--replace", help="Re-split, replacing existing chapters"),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Split a novel into chapters."""
    ctx = get_context(config, verbose)
    try:
        created = ctx.split(novel_id, chapters, replace=replace)
    except NovelAgentError as e:
        _fail(e)
    console.print(f"[green]Created {len(created)} chapters[/green]")
    _print_chapters(created)


def _print_chapters(chapters) -> None:
    table = Table(title="Chapters", box=box.ROUNDED)
    table.add_column("#", justify="right")
    table.add_column("ID", style="cyan")
    table.add_column("Title", style="magenta")
    table.add_column("Chars", justify="right")
    table.add_column("Words", justify="right")
    for chapter in chapters:
        table.add_row(str(chapter["sequence"]), chapter["id"], chapter["title"],
                      str(chapter["total_chars"]), str(chapter["word_count"]))
    console.print(table)


@app.command("chapters")
def list_chapters_cmd(
    novel_id: str = typer.Argument(..., help="Novel ID"),
    config: Optional[str] = ConfigOption,
):
    """List a novel's chapters."""
    from novel_video_agent.novels import list_chapters

    ctx = get_context(config)
    _print_chapters(list_chapters(ctx.store, novel_id))


@app.command()
def narrate(
    chapter_id: str = typer.Argument(..., help="Chapter ID"),
    from_file: Optional[str] = typer.Option(None, "--from-file", help="Use this narration JSON instead of the provider"),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Generate (or regenerate) a chapter's narration."""
    ctx = get_context(config, verbose)
    content_json = None
    if from_file:
        with open(from_file, "r", encoding="utf-8") as f:
            content_json = f.read()
    try:
        record = ctx.narrate(chapter_id, content_json)
    except NovelAgentError as e:
        _fail(e)
    console.print(f"[green]Narration {record['id']} version {record['version']} completed[/green]")


@app.command()
def audio(
    chapter_id: str = typer.Argument(..., help="Chapter ID"),
    retry_failed: bool = typer.Option(False, "--retry-failed", help="Only re-synthesize failed shots"),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Synthesize audio for every shot of a chapter's narration."""
    ctx = get_context(config, verbose)
    try:
        result = ctx.audios(chapter_id, retry_failed=retry_failed)
    except NovelAgentError as e:
        _fail(e)
    _print_batch(result)


@app.command()
def subtitles(
    chapter_id: str = typer.Argument(..., help="Chapter ID"),
    fmt: str = typer.Option("srt", "--format", help="srt or ass"),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Build the caption track for a chapter."""
    ctx = get_context(config, verbose)
    try:
        record = ctx.subtitles(chapter_id, fmt)
    except NovelAgentError as e:
        _fail(e)
    console.print(f"[green]Subtitle {record['id']} stored at {record['storage_key']}[/green]")


def _parse_units(values: Optional[List[str]]):
    """Turn repeated SCENE:SHOT options into unit pairs; None selects every shot."""
    if not values:
        return None
    units = []
    for value in values:
        scene, sep, shot = value.partition(":")
        if not sep or not scene.isdigit() or not shot.isdigit():
            raise typer.BadParameter(f"expected SCENE:SHOT, got {value!r}", param_hint="--shot")
        units.append((int(scene), int(shot)))
    return units


@app.command()
def images(
    chapter_id: str = typer.Argument(..., help="Chapter ID"),
    shot: Optional[List[str]] = typer.Option(None, "--shot", help="Only this SCENE:SHOT (repeatable)"),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Render a new image version for every shot, or only the given ones."""
    units = _parse_units(shot)
    ctx = get_context(config, verbose)
    try:
        result = ctx.images(chapter_id, units=units)
    except NovelAgentError as e:
        _fail(e)
    if result.records:
        console.print(f"Version {result.records[0]['version']}")
    _print_batch(result)


def _print_shot_edit(edit) -> None:
    if not edit.changed:
        console.print("[yellow]Shot unchanged[/yellow]")
        return
    console.print(f"[green]Updated {', '.join(edit.changed)} of narration {edit.narration['id']}[/green]")
    console.print(f"  text: {edit.shot.text}")
    console.print(f"  visual: {edit.shot.visual_description}")
    if edit.shot.character:
        console.print(f"  character: {edit.shot.character}")
    for table, count in edit.invalidated.items():
        if count:
            console.print(f"  [yellow]{count} {table} record(s) invalidated[/yellow]")


@app.command("edit-shot")
def edit_shot(
    chapter_id: str = typer.Argument(..., help="Chapter ID"),
    scene_number: int = typer.Argument(..., help="Scene number"),
    shot_number: int = typer.Argument(..., help="Shot number"),
    text: Optional[str] = typer.Option(None, "--text", help="New narration line"),
    visual: Optional[str] = typer.Option(None, "--visual", help="New visual description"),
    character: Optional[str] = typer.Option(None, "--character", help="Speaking character ('' clears it)"),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Correct one shot of a chapter's narration by hand."""
    ctx = get_context(config, verbose)
    try:
        edit = ctx.edit_shot(chapter_id, scene_number, shot_number,
                             text=text, visual_description=visual, character=character)
    except NovelAgentError as e:
        _fail(e)
    _print_shot_edit(edit)


@app.command("regenerate-shot")
def regenerate_shot(
    chapter_id: str = typer.Argument(..., help="Chapter ID"),
    scene_number: int = typer.Argument(..., help="Scene number"),
    shot_number: int = typer.Argument(..., help="Shot number"),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Ask the structuring provider to rewrite one shot."""
    ctx = get_context(config, verbose)
    try:
        edit = ctx.regenerate_shot(chapter_id, scene_number, shot_number)
    except NovelAgentError as e:
        _fail(e)
    _print_shot_edit(edit)


@app.command("characters")
def list_registry_cmd(
    novel_id: str = typer.Argument(..., help="Novel ID"),
    config: Optional[str] = ConfigOption,
):
    """List a novel's character registry."""
    ctx = get_context(config)
    table = Table(title="Characters", box=box.ROUNDED)
    table.add_column("Name", style="cyan")
    table.add_column("Gender")
    table.add_column("Age")
    table.add_column("Description", style="magenta")
    for character in ctx.characters(novel_id):
        table.add_row(character["name"], character["gender"] or "", character["age_group"] or "",
                      character["description"] or "")
    console.print(table)


@app.command("narration-video")
def narration_video(
    chapter_id: str = typer.Argument(..., help="Chapter ID"),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Assemble the chapter's per-scene narration clips."""
    ctx = get_context(config, verbose)
    try:
        result = ctx.narration_videos(chapter_id)
    except NovelAgentError as e:
        _fail(e)
    _print_batch(result)


@app.command("final-video")
def final_video(
    chapter_id: str = typer.Argument(..., help="Chapter ID"),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Concatenate narration clips and the outro into the final video."""
    ctx = get_context(config, verbose)
    try:
        record = ctx.final_video(chapter_id)
    except NovelAgentError as e:
        _fail(e)
    console.print(f"[green]Final video {record['id']} stored at {record['storage_key']}[/green]")


@app.command()
def status(
    chapter_id: str = typer.Argument(..., help="Chapter ID"),
    config: Optional[str] = ConfigOption,
):
    """Show which stages can run for a chapter."""
    ctx = get_context(config)
    readiness = ctx.status(chapter_id)

    table = Table(title=f"Chapter {chapter_id}", box=box.ROUNDED)
    table.add_column("Stage", style="cyan")
    table.add_column("Ready")
    table.add_column("Missing", style="yellow")
    for stage in STAGES:
        result = readiness[stage]
        table.add_row(
            stage,
            "[green]yes[/green]" if result.ok else "[red]no[/red]",
            "\n".join(str(m) for m in result.missing),
        )
    console.print(table)


if __name__ == "__main__":
    app()
