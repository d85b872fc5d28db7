"""Council CLI entry point."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import click

from . import __version__
from .config import Config
from .errors import CouncilError, InvalidGavelResolution
from .models.client import AgentClient
from .orchestrator.engine import RunController
from .orchestrator.events import EventType, RunEvent
from .orchestrator.run import Run
from .state.agents import AgentRegistry
from .state.hierarchy import Hierarchy
from .state.persistence import JsonFileStore
from .state.pipelines import PipelineStore
from .state.presets import PresetManager
from .utils.logger import RunLogger

LAST_RUN_KEY = "last_run"


class ConsoleHost:
    """Host collaborator that prints delivered output."""

    async def append_message(self, text: str, metadata: Mapping[str, Any]) -> None:
        click.echo(text)

    async def provide_generation_prompt(self, text: str) -> None:
        click.echo("Compiled prompt:\n")
        click.echo(text)


def _load_preset(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{path} is not valid JSON: {exc}") from exc
    if "sections" not in data:
        raise click.ClickException(f"{path} is not a preset document (missing 'sections')")
    return data


def _build(config: Config, preset: Mapping[str, Any]) -> Tuple[RunController, PresetManager, JsonFileStore]:
    store = JsonFileStore(config.global_dir / "store")
    registry = AgentRegistry()
    hierarchy = Hierarchy(registry)
    pipelines = PipelineStore(store)
    controller = RunController(
        registry,
        hierarchy,
        pipelines,
        invoker=AgentClient(config),
        host=ConsoleHost(),
        config=config,
        store=store,
    )
    manager = PresetManager(store)
    for component in (registry, hierarchy, pipelines, controller.delivery):
        manager.register(component)
    manager.apply(preset)
    return controller, manager, store


@click.group()
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context) -> None:
    """The Council - multi-agent pipeline orchestration."""
    config = Config()
    level = str(config.get("general.log_level", "info")).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format="%(levelname)s %(name)s: %(message)s")
    ctx.obj = config


@main.command()
@click.argument("preset_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--pipeline", "pipeline_id", default=None, help="Validate only this pipeline")
@click.pass_obj
def validate(config: Config, preset_file: Path, pipeline_id: Optional[str]) -> None:
    """Validate the pipelines in PRESET_FILE."""
    try:
        controller, _, _ = _build(config, _load_preset(preset_file))
        ids = [pipeline_id] if pipeline_id else [p.id for p in controller.pipelines.list_all()]
        failed = False
        for pid in ids:
            result = controller.validate(pid)
            click.echo(f"{pid}: {'valid' if result.valid else 'INVALID'}")
            for error in result.errors:
                click.echo(f"  error: {error}")
            for warning in result.warnings:
                click.echo(f"  warning: {warning}")
            failed = failed or not result.valid
    except CouncilError as exc:
        raise click.ClickException(str(exc)) from exc
    if failed:
        raise SystemExit(1)


@main.command()
@click.argument("preset_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--pipeline", "pipeline_id", required=True, help="Pipeline to run")
@click.option("--input", "initial_input", default="", help="Initial run input")
@click.option("--mode", type=click.Choice(["synthesis", "compilation"]), default=None, help="Delivery mode")
@click.pass_obj
def run(config: Config, preset_file: Path, pipeline_id: str, initial_input: str, mode: Optional[str]) -> None:
    """Run a pipeline from PRESET_FILE, resolving gavels interactively."""
    try:
        controller, _, _ = _build(config, _load_preset(preset_file))
        if mode:
            controller.set_mode(mode)
        RunLogger(config.log_dir).attach(controller.events)
        result = asyncio.run(_run_interactive(controller, pipeline_id, initial_input))
        controller.save_thread_log(result.run_id, LAST_RUN_KEY)
    except CouncilError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"\nRun {result.run_id}: {result.status.value}")
    for error in result.errors:
        click.echo(f"  {error.get('action_id') or error.get('phase_id') or 'run'}: {error['error']}")
    if result.status.value != "completed":
        raise SystemExit(1)


@main.command(name="export-threads")
@click.option("--output", "output", type=click.Path(dir_okay=False, path_type=Path), required=True)
@click.option("--run-id", default=None, help="Run id (defaults to the last CLI run)")
@click.pass_obj
def export_threads(config: Config, output: Path, run_id: Optional[str]) -> None:
    """Write the thread log of the last run to OUTPUT as JSON."""
    store = JsonFileStore(config.global_dir / "store")
    data = store.load(run_id or LAST_RUN_KEY, {"scope": "threads"})
    if not data:
        raise click.ClickException("No thread log found; run a pipeline first")
    output.write_text(json.dumps(data, indent=2), encoding="utf-8")
    click.echo(f"Wrote {len(data.get('messages', []))} messages to {output}")


async def _run_interactive(controller: RunController, pipeline_id: str, initial_input: str) -> Run:
    queue: "asyncio.Queue[RunEvent]" = asyncio.Queue()
    controller.events.subscribe(queue.put_nowait, [EventType.GAVEL_REQUESTED])
    handle = await controller.start_run(pipeline_id, initial_input)
    waiter = asyncio.ensure_future(handle.wait())
    while not waiter.done():
        getter = asyncio.ensure_future(queue.get())
        done, _ = await asyncio.wait({waiter, getter}, return_when=asyncio.FIRST_COMPLETED)
        if getter in done:
            await _resolve_gavel(controller, handle.run_id, getter.result())
        else:
            getter.cancel()
    return waiter.result()


async def _resolve_gavel(controller: RunController, run_id: str, event: RunEvent) -> None:
    request = event.payload
    click.echo(f"\n== Gavel: {request.get('prompt')}\n")
    click.echo(request.get("text") or "(empty)")
    loop = asyncio.get_running_loop()
    while True:
        # Blocking prompts stay off the event loop.
        resolution, text = await loop.run_in_executor(None, _ask_resolution, request)
        try:
            controller.resume(run_id, resolution, text)
            return
        except InvalidGavelResolution as exc:
            click.echo(f"Invalid resolution: {exc}")


def _ask_resolution(request: Mapping[str, Any]) -> Tuple[str, Optional[str]]:
    choices = ["approve", "edit-and-approve"] + (["skip"] if request.get("can_skip") else [])
    resolution = click.prompt("Resolution", type=click.Choice(choices), default="approve")
    text = None
    if resolution == "edit-and-approve":
        text = click.edit(request.get("text") or "")
        if text is None:
            text = click.prompt("Replacement text")
    return resolution, text


if __name__ == "__main__":
    main()
