"""Export JSON Schemas for the dataset binding and engine settings files.

Editors and CI can validate ``netproto rebind`` inputs and ``--settings``
files against these.
"""

from __future__ import annotations

import json
from pathlib import Path

import typer

from netproto.dataset import DatasetBinding
from netproto.settings import EngineSettings

app = typer.Typer(help="Export JSON Schema for `DatasetBinding` and `EngineSettings`.")


@app.command()
def main(
    out_dir: Path = typer.Argument(..., help="Directory to write the schema files into."),
    pretty: bool = typer.Option(True, help="Write pretty-printed JSON."),
) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    for model, filename in (
        (DatasetBinding, "dataset_binding.schema.json"),
        (EngineSettings, "engine_settings.schema.json"),
    ):
        schema = model.model_json_schema()
        path = out_dir / filename
        path.write_text(json.dumps(schema, indent=2 if pretty else None, sort_keys=False))
        typer.echo(f"Wrote {model.__name__} schema to {path}")


if __name__ == "__main__":
    app()
