"""
======================== ÍNDICE / INDEX ========================
1. Descripción general / Overview
2. Componentes principales / Main components
3. Notas de mantenimiento / Maintenance notes

======================== ESPAÑOL ========================
Archivo: `src/escrutinio/cli.py`.
Herramientas de operador: distribución de casillas, verificación de la
bitácora de checkpoints y consulta del estado local guardado.

Componentes detectados:
  - main
  - layout
  - verify_log
  - show_state

======================== ENGLISH ========================
File: `src/escrutinio/cli.py`.
Operator tools: slot layout, checkpoint journal verification and inspection
of the saved local state.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import typer

from escrutinio.config import load_config
from escrutinio.core.allocation import allocate, party_layout
from escrutinio.core.hashchain import verify_checkpoint_log
from escrutinio.errors import InvalidAllocationInput, PersistenceError
from escrutinio.logging import setup_logging
from escrutinio.persistence import LocalStateStore
from escrutinio.storage import load_journal_entries

app = typer.Typer(help="Escrutinio core CLI")


def _echo_json(payload: object) -> None:
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@app.callback()
def main(
    config: Optional[Path] = typer.Option(None, "--config", help="Archivo YAML de configuración / YAML config file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Nivel de log / log level"),
) -> None:
    """Interfaz de línea de comandos del escrutinio.

    Carga la configuración y deja el logging en ``<storage_path>/logs``.

    English: Tally core command line interface.
    """
    overrides = {"log_level": log_level} if log_level else {}
    try:
        settings = load_config(config, **overrides)
    except ValueError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    logger = setup_logging(settings.log_level, settings.storage_path)
    logger.debug("cli_started", storage_path=str(settings.storage_path), log_level=settings.log_level)


@app.command()
def layout(
    seats: int = typer.Option(..., "--seats", help="Diputados del departamento / seat count"),
    parties: Optional[int] = typer.Option(None, "--parties", help="Cantidad de partidos / party count"),
    names: Optional[str] = typer.Option(None, "--names", help="Partidos separados por coma / comma-separated party ids"),
) -> None:
    """Imprime el rango de casillas de cada partido.

    English: Print each party's slot range.
    """
    try:
        if names:
            party_ids = [name.strip() for name in names.split(",") if name.strip()]
            result = {party: slot_range.to_dict() for party, slot_range in party_layout(seats, party_ids).items()}
        else:
            count = parties if parties is not None else len(load_config().parties)
            result = {str(index): slot_range.to_dict() for index, slot_range in enumerate(allocate(seats, count))}
    except InvalidAllocationInput as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    _echo_json(result)


@app.command("verify-log")
def verify_log(path: Path = typer.Argument(..., help="Bitácora JSON de checkpoints / checkpoint journal")) -> None:
    """Verifica la cadena de hashes de una bitácora de checkpoints.

    English: Verify the hash chain of a checkpoint journal.
    """
    try:
        entries = load_journal_entries(path)
    except (OSError, ValueError) as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    result = verify_checkpoint_log(entries)
    _echo_json(asdict(result))
    if not result.valid:
        raise typer.Exit(code=1)


@app.command("show-state")
def show_state(
    session_id: str = typer.Argument(..., help="Identificador del escrutinio / session id"),
    storage_path: Optional[Path] = typer.Option(None, "--storage-path", help="Raíz de almacenamiento / storage root"),
) -> None:
    """Muestra el registro local guardado para un escrutinio.

    English: Show the saved local record for a session.
    """
    base = storage_path or load_config().storage_path
    try:
        record = LocalStateStore(base).load_record(session_id)
    except PersistenceError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    if record is None:
        typer.echo(f"No saved state for {session_id}", err=True)
        raise typer.Exit(code=1)
    _echo_json(record)


if __name__ == "__main__":
    app()
