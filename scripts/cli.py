#!/usr/bin/env python3
"""
Command-line driver for the Tagstash import pipeline.

Examples:
  PYTHONPATH=./src python scripts/cli.py import export.json --user alice
  PYTHONPATH=./src python scripts/cli.py resume import-01J... export.json --user alice --skip-errors
  PYTHONPATH=./src python scripts/cli.py sessions --user alice
  PYTHONPATH=./src python scripts/cli.py export --user alice --version 1.0 -o out.json

Every command prints a single JSON document; import/resume exit 1 when the run
failed and 2 when the input was rejected before a session was created.
"""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any

import click
import orjson

from Tagstash.config import load_settings
from Tagstash.db import session_scope
from Tagstash.error_classifier import schema_error_entry
from Tagstash.exporter import build_export
from Tagstash.importer import (
    ImportCoordinator,
    ImportOutcome,
    LimitExceededError,
    SchemaValidationError,
    SessionStateError,
)
from Tagstash.importer_context import ImportProgress
from Tagstash.logging import setup_logging
from Tagstash.schemas import RecoveryOptions


def _emit(payload: Any) -> None:
    click.echo(orjson.dumps(payload, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS).decode())


def _read_bundle(path: Path) -> Any:
    try:
        return orjson.loads(path.read_bytes())
    except orjson.JSONDecodeError as err:
        raise click.ClickException(f"{path} is not valid JSON: {err}") from err


def _print_progress(progress: ImportProgress) -> None:
    click.echo(
        f"chunk {progress.chunk_number}: {progress.processed_records}/{progress.total_records} "
        f"({progress.percent}%) imported={progress.imported_records} skipped={progress.skipped_records}",
        err=True,
    )


def _coordinator(*, progress: bool = False) -> ImportCoordinator:
    settings = load_settings()
    setup_logging(settings)
    return ImportCoordinator(
        settings=settings, progress_callback=_print_progress if progress else None
    )


def _run(coro) -> Any:
    """Run a coordinator call, mapping rejections to exit code 2."""
    try:
        return asyncio.run(coro)
    except SchemaValidationError as exc:
        _emit(
            {
                "success": False,
                "errorCode": exc.code,
                "fieldErrors": [e.to_wire() for e in exc.field_errors],
                "errors": [schema_error_entry(e.path, e.message).to_wire() for e in exc.field_errors],
            }
        )
        sys.exit(2)
    except LimitExceededError as exc:
        _emit({"success": False, "errorCode": exc.code, "errors": [exc.entry.to_wire()]})
        sys.exit(2)
    except SessionStateError as exc:
        _emit({"success": False, "errorCode": exc.code, "message": exc.message})
        sys.exit(2)


def _finish(outcome: ImportOutcome) -> None:
    _emit(outcome.to_wire())
    if not outcome.success:
        sys.exit(1)


@click.group()
def app() -> None:
    """Import and export tagged records."""


@app.command("import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--user", "user_id", required=True, help="Owner of the imported records")
@click.option("--progress", is_flag=True, default=False, help="Report each chunk on stderr")
def import_cmd(file: Path, user_id: str, progress: bool) -> None:
    bundle = _read_bundle(file)
    _finish(_run(_coordinator(progress=progress).run_import(user_id, bundle)))


@app.command("resume")
@click.argument("session_id")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--user", "user_id", required=True)
@click.option("--retry", is_flag=True, default=False, help="Retry instead of resume")
@click.option("--skip-errors", is_flag=True, default=False, help="Skip chunks that fail again")
@click.option("--start-from", "start_from", type=click.IntRange(min=0), default=None)
@click.option("--progress", is_flag=True, default=False, help="Report each chunk on stderr")
def resume_cmd(
    session_id: str,
    file: Path,
    user_id: str,
    retry: bool,
    skip_errors: bool,
    start_from: int | None,
    progress: bool,
) -> None:
    options = RecoveryOptions(
        action="retry" if retry else "resume",
        session_id=session_id,
        skip_errors=skip_errors,
        start_from_index=start_from,
    )
    bundle = _read_bundle(file)
    _finish(_run(_coordinator(progress=progress).resume_import(user_id, options, bundle)))


@app.command("cancel")
@click.argument("session_id")
@click.option("--user", "user_id", required=True)
def cancel_cmd(session_id: str, user_id: str) -> None:
    snap = _run(_coordinator().cancel_import(user_id, session_id))
    _emit(
        {
            "sessionId": snap.session_id,
            "status": snap.status.value,
            "processedRecords": snap.processed_records,
        }
    )


@app.command("sessions")
@click.option("--user", "user_id", required=True)
@click.option("--limit", type=click.IntRange(min=1), default=10, show_default=True)
def sessions_cmd(user_id: str, limit: int) -> None:
    infos = _run(_coordinator().tracker.list_resumable(user_id, limit=limit))
    _emit({"sessions": [i.to_wire() for i in infos]})


@app.command("export")
@click.option("--user", "user_id", required=True)
@click.option("--version", type=click.Choice(["1.0", "2.0"]), default="2.0", show_default=True)
@click.option("-o", "--output", type=click.Path(dir_okay=False, path_type=Path), default=None)
def export_cmd(user_id: str, version: str, output: Path | None) -> None:
    setup_logging(load_settings())

    async def _export() -> dict[str, Any]:
        async with session_scope() as s:
            return await build_export(s, user_id, version=version)

    bundle = asyncio.run(_export())
    if output is None:
        _emit(bundle)
        return
    output.write_bytes(orjson.dumps(bundle, option=orjson.OPT_INDENT_2))
    click.echo(f"wrote {len(bundle['records'])} records to {output}")


def main() -> None:  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
