from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, cast

import orjson
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .aggregator import DateWindow, SprintAggregator, parse_domains, render_json, render_markdown
from .config import Settings
from .engine import MigrationEngine
from .errors import EXIT_IO, EXIT_NOOP, EXIT_VALIDATION, ParseError, TaskVaultError, ValidationError
from .events import parse_event
from .features import FeatureCatalog
from .guard import UNSEALED_ARCHIVE, ConsistencyGuard
from .ledger.ledger import ARCHIVE_SEALED, Ledger
from .schemas import MigrationResult, SprintReport, Violation
from .store import open_store
from .utils import read_json
from .validator import Validator
from .workspace import load_domain, read_prefixes

app = typer.Typer(help="taskvault: backlog lifecycle and archival")
ledger_app = typer.Typer(help="Ledger commands")
console = Console()
err_console = Console(stderr=True)

ROOT_OPTION = typer.Option(None, "--root", file_okay=False, help="Repository root (default: cwd).")
CONFIG_OPTION = typer.Option(None, "--config", exists=True, dir_okay=False)
BACKEND_OPTION = typer.Option(None, "--backend", help="Store backend: file or git.")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v")
TASK_OPTION = typer.Option(..., "--task")
DOMAIN_OPTION = typer.Option(..., "--domain")
EVENT_DOMAIN_OPTION = typer.Option(None, "--domain", help="Skip the lookup across domains.")
REF_OPTION = typer.Option(..., "--ref", help="Change-request number, with or without '#'.")
DATE_OPTION = typer.Option(..., "--date", help="Merge date (YYYY-MM-DD or ISO timestamp).")
EVENT_OPTION = typer.Option(..., "--event", exists=True, dir_okay=False)
STRICT_OPTION = typer.Option(False, "--strict")
SEAL_OPTION = typer.Option(False, "--seal", help="Record the archive baseline if none exists.")
DOMAINS_OPTION = typer.Option(..., "--domains", help="Comma-separated domain names.")
OUTPUT_OPTION = typer.Option(..., "--output", help=".json for canonical JSON, else markdown.")
WINDOW_OPTION = typer.Option(None, "--window", help="FROM..TO, either side optional.")
LEDGER_PATH_OPTION = typer.Option(None, "--path", dir_okay=False)

BACKENDS = ("file", "git")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_time=False, show_path=False)],
        force=True,
    )


def _load_settings(
    config: Optional[Path], root: Optional[Path] = None, backend: Optional[str] = None
) -> Settings:
    settings = Settings() if config is None else Settings(**read_json(config))
    overrides: Dict[str, Any] = {}
    if root is not None:
        overrides["root"] = root
    if backend is not None:
        if backend not in BACKENDS:
            raise typer.BadParameter(f"unknown backend: {backend}", param_hint="--backend")
        overrides["backend"] = backend
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@app.callback()
def main(
    ctx: typer.Context,
    root: Optional[Path] = ROOT_OPTION,
    config: Optional[Path] = CONFIG_OPTION,
    backend: Optional[str] = BACKEND_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    _configure_logging(verbose)
    ctx.obj = _load_settings(config, root=root, backend=backend)


def _settings(ctx: typer.Context) -> Settings:
    return cast(Settings, ctx.obj)


def _print_violations(violations: List[Violation]) -> None:
    for violation in violations:
        console.print(f"  - {violation.atom()}", markup=False, soft_wrap=True)


@contextmanager
def _reported() -> Iterator[None]:
    try:
        yield
    except TaskVaultError as exc:
        console.print(f"error: {exc}", markup=False, soft_wrap=True)
        if isinstance(exc, ValidationError):
            _print_violations(exc.violations)
        raise typer.Exit(code=exc.exit_code) from exc


def _parse_ref(value: str) -> int:
    cleaned = value.strip().lstrip("#")
    if not cleaned.isdigit():
        raise ValidationError(
            [
                Violation(
                    code="invalid_merge_ref",
                    subject=value or "<empty>",
                    field="merge_ref",
                    message="change-request number must be a positive integer",
                )
            ]
        )
    return int(cleaned)


def _engine(settings: Settings) -> MigrationEngine:
    return MigrationEngine(
        settings,
        open_store(settings),
        FeatureCatalog(settings),
        Ledger(settings.ledger_path()),
    )


def _finish_migration(result: MigrationResult) -> None:
    console.print(result.model_dump(exclude={"record"}))
    if result.noop:
        raise typer.Exit(code=EXIT_NOOP)


@app.command("migrate")
def migrate_cmd(
    ctx: typer.Context,
    task: str = TASK_OPTION,
    domain: str = DOMAIN_OPTION,
    ref: str = REF_OPTION,
    merge_date: str = DATE_OPTION,
) -> None:
    """Move a task from its domain backlog into the completed archive."""
    settings = _settings(ctx)
    with _reported():
        result = _engine(settings).migrate(task, domain, _parse_ref(ref), merge_date)
    _finish_migration(result)


@app.command("migrate-event")
def migrate_event_cmd(
    ctx: typer.Context,
    event: Path = EVENT_OPTION,
    domain: Optional[str] = EVENT_DOMAIN_OPTION,
) -> None:
    """Archive the task a merge-event payload resolves."""
    settings = _settings(ctx)
    with _reported():
        try:
            payload = read_json(event)
        except orjson.JSONDecodeError as exc:
            raise ParseError(1, f"event is not valid JSON: {exc}", str(event)) from exc
        if not isinstance(payload, dict):
            raise ParseError(1, "event payload must be a JSON object", str(event))
        result = _engine(settings).migrate_event(parse_event(payload), domain)
    _finish_migration(result)


@app.command("validate")
def validate_cmd(
    ctx: typer.Context,
    domain: str = DOMAIN_OPTION,
    strict: bool = STRICT_OPTION,
) -> None:
    """Check every record of a domain against the table schemas."""
    settings = _settings(ctx)
    with _reported():
        snapshot = open_store(settings).read(read_prefixes(settings))
        state = load_domain(snapshot, settings, domain)
        validator = Validator(settings, FeatureCatalog(settings))
        violations = validator.validate_backlog(state.backlog, strict=strict)
        violations.extend(validator.validate_archive(state.archive))
    _print_violations(violations)
    console.print({"ok": not violations, "domain": domain, "strict": strict, "violations": len(violations)})
    if violations:
        raise typer.Exit(code=EXIT_VALIDATION)


@app.command("check")
def check_cmd(
    ctx: typer.Context,
    domain: str = DOMAIN_OPTION,
    seal: bool = SEAL_OPTION,
) -> None:
    """Verify mutual exclusion, archive uniqueness and sealed history."""
    settings = _settings(ctx)
    with _reported():
        guard = ConsistencyGuard(settings, open_store(settings))
        violations = guard.check(domain)
        sealed = None
        if seal and all(violation.code == UNSEALED_ARCHIVE for violation in violations):
            sealed = guard.seal(domain)
            violations = guard.check(domain)
    _print_violations(violations)
    report: Dict[str, Any] = {"ok": not violations, "domain": domain, "violations": len(violations)}
    if sealed is not None:
        Ledger(settings.ledger_path()).append(
            ARCHIVE_SEALED, domain=domain, payload={"sections": len(sealed["sections"])}
        )
        report["sealed_sections"] = len(sealed["sections"])
    console.print(report)
    if violations:
        raise typer.Exit(code=EXIT_VALIDATION)


def _report_table(report: SprintReport) -> Table:
    table = Table(title=f"Sprint report {report.window or ''}".strip())
    for column in ("Domain", "Total", "Completed", "%", "Remaining days"):
        table.add_column(column)
    for stats in [*report.domains, report.aggregate]:
        table.add_row(
            stats.domain,
            str(stats.total_tasks),
            str(stats.completed_count),
            str(stats.percent_complete),
            stats.remaining_effort_days,
        )
    return table


@app.command("report")
def report_cmd(
    ctx: typer.Context,
    domains: str = DOMAINS_OPTION,
    output: Path = OUTPUT_OPTION,
    window: Optional[str] = WINDOW_OPTION,
) -> None:
    """Summarize progress across domains into a markdown or JSON file."""
    settings = _settings(ctx)
    with _reported():
        names = parse_domains(domains)
        date_window = DateWindow.parse(window) if window else None
        report = SprintAggregator(settings, open_store(settings)).report(names, date_window)
    if output.suffix.lower() == ".json":
        payload = render_json(report)
    else:
        payload = render_markdown(report).encode("utf-8")
    try:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(payload)
    except OSError as exc:
        console.print(f"error: cannot write {output}: {exc}", markup=False, soft_wrap=True)
        raise typer.Exit(code=EXIT_IO) from exc
    console.print(_report_table(report))
    console.print({"report": str(output), "digest": report.stable_hash()})


@ledger_app.command("verify")
def ledger_verify_cmd(ctx: typer.Context, path: Optional[Path] = LEDGER_PATH_OPTION) -> None:
    ledger_path = path or _settings(ctx).ledger_path()
    ok, message = Ledger.verify_chain(ledger_path)
    console.print({"ok": ok, "message": message})
    if not ok:
        raise typer.Exit(code=EXIT_VALIDATION)


app.add_typer(ledger_app, name="ledger")

if __name__ == "__main__":
    app()
