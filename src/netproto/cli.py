"""Command-line utilities for the netproto package."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import get_version
from .api import load_description
from .dataset import load_dataset_binding
from .errors import NetProtoError
from .layers import KIND_TABLE
from .phase import Phase, parse_phase
from .rawproto import Node
from .settings import EngineSettings, load_settings
from .transforms import (
    find_layer_parameter,
    normalize_for_running,
    normalize_for_training,
    rebind_dataset,
)

app = typer.Typer(help="Network description utilities")
console = Console()
err_console = Console(stderr=True)

SettingsOption = Annotated[
    Path | None,
    typer.Option("--settings", exists=True, readable=True, help="Engine settings YAML/JSON."),
]
OutOption = Annotated[
    Path | None, typer.Option("--out", "-o", help="Write the result here instead of stdout.")
]


@app.callback()
def main_options(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log transform decisions.")] = False,
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _load(path: Path) -> Node:
    try:
        return load_description(path)
    except NetProtoError as exc:
        err_console.print(f"[bold red]{path}:[/] {exc}")
        raise typer.Exit(code=1) from exc


def _settings(path: Path | None) -> EngineSettings:
    return load_settings(path) if path is not None else EngineSettings()


def _emit(tree: Node, out: Path | None) -> None:
    text = tree.to_text()
    if out is None:
        typer.echo(text, nl=False)
    else:
        out.write_text(text)
        err_console.print(f"[bold green]Written:[/] {out}")


@app.command()
def version() -> None:
    """Print the installed package version."""
    typer.echo(get_version())


@app.command()
def fmt(
    path: Annotated[Path, typer.Argument(exists=True, readable=True)],
    out: OutOption = None,
) -> None:
    """Parse a description and re-emit it in canonical layout."""
    _emit(_load(path), out)


@app.command()
def train(
    path: Annotated[Path, typer.Argument(exists=True, readable=True)],
    name: Annotated[str, typer.Option(help="Name for synthesized data layers.")] = "data",
    native_format: Annotated[bool, typer.Option(help="Use BGR color order.")] = False,
    settings: SettingsOption = None,
    out: OutOption = None,
) -> None:
    """Complete a description for training."""
    try:
        tree = normalize_for_training(_load(path), name, native_format, _settings(settings))
    except NetProtoError as exc:
        err_console.print(f"[bold red]{path}:[/] {exc}")
        raise typer.Exit(code=1) from exc
    _emit(tree, out)


@app.command()
def live(
    path: Annotated[Path, typer.Argument(exists=True, readable=True)],
    batch: Annotated[int, typer.Option(min=1)] = 1,
    channels: Annotated[int, typer.Option(min=1)] = 3,
    height: Annotated[int, typer.Option(min=1)] = 224,
    width: Annotated[int, typer.Option(min=1)] = 224,
    input_name: Annotated[str, typer.Option(help="Fallback input blob name.")] = "data",
    settings: SettingsOption = None,
    out: OutOption = None,
) -> None:
    """Rewrite a description for inference with a fixed input shape."""
    try:
        tree, transform = normalize_for_running(
            _load(path), input_name, batch, channels, height, width, _settings(settings)
        )
    except NetProtoError as exc:
        err_console.print(f"[bold red]{path}:[/] {exc}")
        raise typer.Exit(code=1) from exc
    _emit(tree, out)
    if transform is not None:
        err_console.print("[bold]Preprocessing:[/]")
        err_console.print(transform.to_text(), markup=False)


@app.command()
def rebind(
    path: Annotated[Path, typer.Argument(exists=True, readable=True)],
    binding: Annotated[Path, typer.Argument(exists=True, readable=True)],
    resize: Annotated[bool, typer.Option(help="Resize the classifier to the label count.")] = False,
    out: OutOption = None,
) -> None:
    """Point data layers at the sources of a dataset binding file."""
    dataset = load_dataset_binding(binding)
    try:
        tree, resized = rebind_dataset(_load(path), dataset, resize)
    except NetProtoError as exc:
        err_console.print(f"[bold red]{path}:[/] {exc}")
        raise typer.Exit(code=1) from exc
    _emit(tree, out)
    if resized:
        err_console.print(f"[bold]Resized outputs to[/] {dataset.training.label_count}")


@app.command()
def find(
    path: Annotated[Path, typer.Argument(exists=True, readable=True)],
    layer_type: Annotated[str, typer.Argument(help="Layer type, e.g. Data.")],
    field: Annotated[str, typer.Argument(help="Field to read.")],
    param: Annotated[str | None, typer.Option(help="Parameter block, e.g. data_param.")] = None,
    name: Annotated[str | None, typer.Option(help="Restrict to this layer name.")] = None,
    phase: Annotated[str, typer.Option(help="Prefer layers included in this phase.")] = "NONE",
) -> None:
    """Look up one field of a layer; exits with code 1 when nothing matches."""
    try:
        value = find_layer_parameter(
            _load(path), name, layer_type, param, field, parse_phase(phase)
        )
    except NetProtoError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if value is None:
        err_console.print("[yellow]not found[/]")
        raise typer.Exit(code=1)
    typer.echo(value)


@app.command()
def kinds() -> None:
    """List the layer kinds with their documented ports and default blocks."""
    table = Table(title="Layer kinds")
    table.add_column("Type")
    table.add_column("Bottom")
    table.add_column("Top")
    table.add_column("Blocks")
    table.add_column("RUN max bottoms")
    for kind, spec in KIND_TABLE.items():
        limits = dict(spec.max_bottom)
        table.add_row(
            kind.value,
            ", ".join(spec.bottom) or "-",
            ", ".join(spec.top) or "-",
            ", ".join(spec.slots) or "-",
            str(limits.get(Phase.RUN, "-")),
        )
    console.print(table)


def main() -> None:
    """Entry point for `python -m netproto.cli`."""
    app()


if __name__ == "__main__":
    main()
