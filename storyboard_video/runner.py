"""CLI runner for storyboard video generation.

Usage:
    storyboard-video init --storyboard storyboard.json
    storyboard-video set-image --shot 0 frame.png
    storyboard-video generate --shot 0 [--model fast]
    storyboard-video generate-all [--batch-size 3]
    storyboard-video status
    storyboard-video backup [--out backup.json]
    storyboard-video restore backup.json
"""

from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
import sys
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from storyboard_video.blob_store import BlobStore, thumbnail_key, video_key
from storyboard_video.client import VeoClient
from storyboard_video.codec import BackupCodec
from storyboard_video.config import get_api_key, get_blob_dir, get_workspace_path, load_config
from storyboard_video.errors import StoryboardVideoError
from storyboard_video.handles import HandleRegistry
from storyboard_video.models import (
    STATUS_ERROR,
    VEO_MODELS,
    EphemeralReference,
    GenerationStatus,
    encode_data_uri,
)
from storyboard_video.thumbnail import ThumbnailExtractor
from storyboard_video.workspace import ShotStatusCallback, StoryboardWorkspace

console = Console()

_DEFAULT_CONFIG = "config.yaml"


def _setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quiet down httpx unless debugging
    if not verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def _session(
    config_path: str,
    need_api: bool = False,
    on_status: ShotStatusCallback | None = None,
) -> AsyncIterator[tuple[StoryboardWorkspace, Path]]:
    """Open the workspace described by config.yaml for one command."""
    config = load_config(config_path)
    api_key = get_api_key(config) if need_api else config["api"].get("api_key", "")

    registry = HandleRegistry()
    store = BlobStore(get_blob_dir(config, config_path))
    thumb_cfg = config["thumbnail"]
    thumbnailer = ThumbnailExtractor(
        ffmpeg=thumb_cfg["ffmpeg"],
        offset_seconds=float(thumb_cfg["offset_seconds"]),
        quality=float(thumb_cfg["quality"]),
    )

    async with VeoClient(api_key=api_key, base_url=config["api"]["base_url"]) as client:
        workspace = StoryboardWorkspace(
            client=client,
            store=store,
            registry=registry,
            thumbnailer=thumbnailer,
            on_status=on_status,
            poll_interval=float(config["polling"]["interval_seconds"]),
            max_attempts=int(config["polling"]["max_attempts"]),
            model=config["generation"]["model"],
            aspect_ratio=config["generation"]["aspect_ratio"],
            negative_prompt=config["generation"].get("negative_prompt"),
        )
        try:
            yield workspace, get_workspace_path(config, config_path)
        finally:
            workspace.close()
            registry.release_all()


def _run(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run a command coroutine, mapping failures to exit codes."""
    try:
        return asyncio.run(coro)
    except FileNotFoundError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    except ValueError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        sys.exit(1)
    except StoryboardVideoError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted. Remote jobs keep running but their results are discarded.[/yellow]")
        sys.exit(130)


def _progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    )


@click.group()
@click.option("--config", "-c", default=_DEFAULT_CONFIG, help="Path to config.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config: str, verbose: bool) -> None:
    """Storyboard to Veo video clips."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    _setup_logging(verbose)


# ----------------------------------------------------------------------
# Workspace setup
# ----------------------------------------------------------------------


@cli.command("init")
@click.option("--storyboard", "-s", required=True, type=click.Path(exists=True, dir_okay=False), help="Storyboard JSON file")
@click.pass_context
def cmd_init(ctx: click.Context, storyboard: str) -> None:
    """Start a workspace from a storyboard JSON file."""

    async def _init() -> None:
        with open(storyboard, "r", encoding="utf-8") as f:
            project = json.load(f)
        async with _session(ctx.obj["config"]) as (ws, ws_path):
            ws.load_project(project)
            seeded = ws.seed_videos_from_assets()
            ws.save(ws_path)
        console.print(f"[green]Workspace ready: {len(ws.shots)} shots, {seeded} asset videos -> {ws_path}[/green]")

    _run(_init())


@cli.command("set-image")
@click.option("--shot", "-n", required=True, type=int, help="Shot index (0-based)")
@click.argument("image", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def cmd_set_image(ctx: click.Context, shot: int, image: str) -> None:
    """Use a local image as the start frame of a shot."""

    async def _set_image() -> None:
        mime_type = mimetypes.guess_type(image)[0] or "image/png"
        data = Path(image).read_bytes()
        async with _session(ctx.obj["config"]) as (ws, ws_path):
            ws.load(ws_path)
            label = ws.shot_label(shot)
            ws.images[shot] = encode_data_uri(data, mime_type)
            ws.save(ws_path)
        console.print(f"[green]Start image set for shot {label}[/green]")

    _run(_set_image())


@cli.command("set-video-url")
@click.option("--shot", "-n", required=True, type=int, help="Shot index (0-based)")
@click.argument("url")
@click.pass_context
def cmd_set_video_url(ctx: click.Context, shot: int, url: str) -> None:
    """Save a remote video URL for a shot."""

    async def _set_url() -> None:
        async with _session(ctx.obj["config"]) as (ws, ws_path):
            ws.load(ws_path)
            ws.save_video_url(shot, url)
            await ws.store.delete(video_key(shot))
            await ws.store.delete(thumbnail_key(shot))
            ws.save(ws_path)
        console.print("[green]Video URL saved[/green]")

    _run(_set_url())


# ----------------------------------------------------------------------
# Generation
# ----------------------------------------------------------------------


@cli.command("models")
def cmd_models() -> None:
    """List the available Veo models."""
    table = Table(title="Veo models")
    table.add_column("Alias", style="cyan")
    table.add_column("Model ID")
    table.add_column("Name")
    table.add_column("Tier", justify="center")
    table.add_column("Description")
    for model in VEO_MODELS:
        table.add_row(model.alias, model.id, model.name, model.tier, model.description)
    console.print(table)


@cli.command("generate")
@click.option("--shot", "-n", required=True, type=int, help="Shot index (0-based)")
@click.option("--model", "-m", default=None, help="Model id or alias (see 'models')")
@click.pass_context
def cmd_generate(ctx: click.Context, shot: int, model: str | None) -> None:
    """Generate the video for one shot."""

    async def _generate() -> EphemeralReference | None:
        with _progress() as progress:
            task = progress.add_task(f"Shot {shot}", total=100)

            def on_status(index: int, status: GenerationStatus) -> None:
                progress.update(task, completed=status.progress, description=f"Shot {index}: {status.message}")

            async with _session(ctx.obj["config"], need_api=True, on_status=on_status) as (ws, ws_path):
                ws.load(ws_path)
                ref = await ws.generate_shot(shot, model)
                ws.save(ws_path)
                return ref

    ref = _run(_generate())
    if ref is not None:
        console.print(f"[bold green]Shot {shot} video stored as {video_key(shot)}[/bold green]")


@cli.command("generate-all")
@click.option("--batch-size", "-b", default=None, type=int, help="Shots generated concurrently")
@click.option("--model", "-m", default=None, help="Model id or alias (see 'models')")
@click.pass_context
def cmd_generate_all(ctx: click.Context, batch_size: int | None, model: str | None) -> None:
    """Generate videos for every shot that has none."""
    config_path = ctx.obj["config"]

    async def _generate_all() -> dict[int, BaseException]:
        size = batch_size or int(load_config(config_path)["batch"]["size"])
        with _progress() as progress:
            tasks: dict[int, Any] = {}

            def on_status(index: int, status: GenerationStatus) -> None:
                if index not in tasks:
                    tasks[index] = progress.add_task(f"Shot {index}", total=100)
                style = "[red]" if status.status == STATUS_ERROR else ""
                progress.update(
                    tasks[index],
                    completed=status.progress,
                    description=f"{style}Shot {index}: {status.message}",
                )

            async with _session(config_path, need_api=True, on_status=on_status) as (ws, ws_path):
                ws.load(ws_path)
                await ws.load_local_videos()
                failures = await ws.generate_all(batch_size=size, model=model)
                ws.save(ws_path)
                return failures

    failures = _run(_generate_all())
    if failures:
        for index, exc in sorted(failures.items()):
            console.print(f"  [red]Shot {index} failed: {exc}[/red]")
        sys.exit(1)
    console.print("[bold green]All videos generated.[/bold green]")


# ----------------------------------------------------------------------
# Status
# ----------------------------------------------------------------------


@cli.command("status")
@click.pass_context
def cmd_status(ctx: click.Context) -> None:
    """Show the videos of every shot."""

    async def _status() -> None:
        async with _session(ctx.obj["config"]) as (ws, ws_path):
            ws.load(ws_path)
            title = ws.project_state.get("project_meta", {}).get("title") or "Storyboard"

            table = Table(title=title, show_lines=True)
            table.add_column("Shot", style="cyan")
            table.add_column("Type")
            table.add_column("Image", justify="center")
            table.add_column("Video", justify="center")
            table.add_column("Size", justify="right")
            table.add_column("Created")

            for index, shot in enumerate(ws.shots):
                entry = await ws.store.get_entry(video_key(index))
                remote = ws.videos.get(index)
                if entry is not None:
                    has_thumb = await ws.store.get(thumbnail_key(index)) is not None
                    video_str = "[green]LOCAL[/green]" + (" +thumb" if has_thumb else "")
                    size_str = f"{len(entry.data) / 1024:.1f} KB"
                    created = datetime.fromtimestamp(entry.created_at).strftime("%Y-%m-%d %H:%M")
                elif remote is not None:
                    video_str, size_str, created = "[yellow]URL[/yellow]", "", ""
                else:
                    video_str, size_str, created = "[dim]NONE[/dim]", "", ""
                image_str = "[green]yes[/green]" if index in ws.images else "[dim]no[/dim]"
                table.add_row(
                    str(shot.get("kf_id", index)),
                    str(shot.get("shot_type", "")),
                    image_str,
                    video_str,
                    size_str,
                    created,
                )

        console.print(table)

    _run(_status())


# ----------------------------------------------------------------------
# Backup / restore
# ----------------------------------------------------------------------


@cli.command("backup")
@click.option("--out", "-o", default=None, help="Backup file (default: storyboard-backup-<title>-<date>.json)")
@click.pass_context
def cmd_backup(ctx: click.Context, out: str | None) -> None:
    """Write the whole working set, videos included, to a JSON backup."""

    async def _backup() -> Path:
        async with _session(ctx.obj["config"]) as (ws, ws_path):
            ws.load(ws_path)
            await ws.load_local_videos()
            codec = BackupCodec(ws.registry)
            document = await codec.serialize(ws.project_state, ws.images, ws.videos)
            return codec.write_backup(out or codec.default_filename(document), document)

    path = _run(_backup())
    console.print(f"[bold green]Backup written: {path}[/bold green]")


@cli.command("restore")
@click.argument("backup_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def cmd_restore(ctx: click.Context, backup_file: str) -> None:
    """Replace the working set with the contents of a backup."""

    async def _restore() -> tuple[int, int]:
        async with _session(ctx.obj["config"]) as (ws, ws_path):
            codec = BackupCodec(ws.registry)
            restored = await codec.deserialize(codec.read_backup(backup_file))
            ws.apply_restore(restored)
            await ws.persist_videos()
            ws.save(ws_path)
            return len(ws.images), len(ws.videos)

    images, videos = _run(_restore())
    console.print(f"[bold green]Restored {images} images and {videos} videos.[/bold green]")


@cli.command("clear-store")
@click.confirmation_option(prompt="Delete every stored video and thumbnail?")
@click.pass_context
def cmd_clear_store(ctx: click.Context) -> None:
    """Delete every stored video and thumbnail."""

    async def _clear() -> None:
        async with _session(ctx.obj["config"]) as (ws, _):
            await ws.store.clear()

    _run(_clear())
    console.print("[green]Blob store cleared.[/green]")


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
