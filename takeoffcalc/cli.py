"""TakeoffCalc CLI.

Commands:
- init: Initialize database schema
- validate-rules: Check a YAML/JSON rule set
- apply-rules: Apply a rule set to a features file and print the BOM
- fuse: Fuse a bundle of extraction records into rooms and walls
- check: Run consistency checks on a sheets+features snapshot
- seed-rules: Store the bundled default rule sets
- submit: Create a QUEUED job for a drawing set
- status: Show a job's status and history
- process-queue: Process every QUEUED job once
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from takeoffcalc.config import get_config
from takeoffcalc.consistency import ConsistencyChecker
from takeoffcalc.core.logging import configure_logging
from takeoffcalc.db.connection import close_db, get_session_factory, init_db
from takeoffcalc.db.repository import TakeoffRepository
from takeoffcalc.errors import QuantityExpressionError, RuleSetValidationError, TakeoffError
from takeoffcalc.fusion import DataFusionEngine, FusionInput
from takeoffcalc.models import Feature, Sheet
from takeoffcalc.reporting import materials_to_csv, summarize_materials
from takeoffcalc.rules import MaterialsRuleEngine, parse_rule_set
from takeoffcalc.rules.catalog import seed_default_rule_sets

app = typer.Typer(
    name="takeoffcalc",
    help="TakeoffCalc - Drawing takeoff fusion and materials rules",
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main_callback(
    log_level: str | None = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
):
    configure_logging(log_level)


def _load_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]✗[/red] Cannot read {path}: {e}")
        raise typer.Exit(1) from e


def _load_rule_set(path: Path):
    try:
        return parse_rule_set(path.read_bytes())
    except OSError as e:
        console.print(f"[red]✗[/red] Cannot read {path}: {e}")
        raise typer.Exit(1) from e
    except RuleSetValidationError as e:
        console.print(f"[red]✗[/red] Invalid rule set: {e}")
        raise typer.Exit(1) from e


def _repository() -> TakeoffRepository:
    return TakeoffRepository(get_session_factory())


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")

    async def _init():
        try:
            await init_db(drop=drop)
        finally:
            await close_db()

    asyncio.run(_init())
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command(name="validate-rules")
def validate_rules_cmd(
    file: Path = typer.Argument(..., help="Rule set file (YAML/JSON)"),
):
    """Parse and validate a rule set."""
    rule_set = _load_rule_set(file)
    materials = sum(len(rule.materials) for rule in rule_set.rules)
    console.print(
        f"[bold green]✓[/bold green] Rule set v{rule_set.version}: "
        f"{len(rule_set.rules)} rules, {materials} material lines"
    )


@app.command(name="apply-rules")
def apply_rules_cmd(
    rules: Path = typer.Argument(..., help="Rule set file (YAML/JSON)"),
    features_file: Path = typer.Argument(..., help="JSON list of features (or {features: [...]})"),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
    as_csv: bool = typer.Option(False, "--csv", help="Print the BOM as CSV"),
):
    """Apply a rule set to features and print the bill of materials."""
    rule_set = _load_rule_set(rules)
    payload = _load_json(features_file)
    raw_features = payload.get("features", []) if isinstance(payload, dict) else payload
    features = [Feature.model_validate(item) for item in raw_features]

    config = get_config()
    engine = MaterialsRuleEngine(currency=config.pricing.currency)
    try:
        materials = engine.generate_materials(features, rule_set)
    except QuantityExpressionError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(1) from e

    if as_csv:
        typer.echo(materials_to_csv(materials), nl=False)
        return
    report = summarize_materials(features_file.stem, materials, config.pricing.currency)
    if as_json:
        console.print_json(json.dumps(report))
        return

    table = Table(title=f"Bill of Materials ({len(features)} features)")
    table.add_column("SKU", style="cyan")
    table.add_column("Description")
    table.add_column("Qty", justify="right", style="green")
    table.add_column("UOM")
    table.add_column("Total", justify="right")
    for item in report["items"]:
        total = item["total_price"]
        table.add_row(
            item["sku"],
            item["description"] or "",
            f"{item['qty']:.2f}",
            item["uom"],
            f"{total:.2f}" if total is not None else "-",
        )
    console.print(table)
    summary = report["summary"]
    console.print(
        f"[bold]Total:[/bold] {summary['total_items']} items, "
        f"{summary['total_value']:.2f} {summary['currency']}"
    )


@app.command()
def fuse(
    extraction_file: Path = typer.Argument(..., help="JSON bundle: sheets plus extraction records"),
):
    """Fuse extraction records into rooms and walls."""
    payload = _load_json(extraction_file)
    sheets = [Sheet.model_validate(item) for item in payload.get("sheets", [])]
    data = FusionInput.model_validate({k: v for k, v in payload.items() if k != "sheets"})
    summary = DataFusionEngine(get_config().extraction.render_dpi).fuse(sheets, data)

    rooms = Table(title=f"Rooms ({len(summary.rooms)})")
    rooms.add_column("Room", style="cyan")
    rooms.add_column("Name")
    rooms.add_column("Height (ft)", justify="right")
    rooms.add_column("Sheets")
    for room in summary.rooms:
        rooms.add_row(
            room.room_number,
            room.room_name or "",
            f"{room.height_ft:g}" if room.height_ft is not None else "-",
            ", ".join(room.sheet_refs),
        )
    console.print(rooms)

    walls = Table(title=f"Walls ({len(summary.walls)})")
    walls.add_column("Wall", style="cyan")
    walls.add_column("Type")
    walls.add_column("Length (px)", justify="right")
    walls.add_column("Length (ft)", justify="right", style="green")
    walls.add_column("Scale source")
    for wall in summary.walls:
        walls.add_row(
            wall.id,
            wall.partition_type_id or "",
            f"{wall.length_px:.2f}",
            f"{wall.length_ft:.2f}" if wall.length_ft is not None else "-",
            wall.scale_source or "",
        )
    console.print(walls)
    console.print(f"[bold]Total wall length:[/bold] {summary.total_wall_length_ft:.2f} ft")


@app.command()
def check(
    snapshot_file: Path = typer.Argument(..., help="JSON snapshot: {sheets: [...], features: [...]}"),
):
    """Run consistency checks on a sheets+features snapshot."""
    payload = _load_json(snapshot_file)
    sheets = [Sheet.model_validate(item) for item in payload.get("sheets", [])]
    features = [Feature.model_validate(item) for item in payload.get("features", [])]
    report = ConsistencyChecker().check(sheets, features)

    if not report.issues:
        console.print("[bold green]✓[/bold green] No consistency issues")
        return

    table = Table(title="Consistency Issues")
    table.add_column("Type", style="cyan")
    table.add_column("Severity")
    table.add_column("Message")
    for issue in report.issues:
        table.add_row(issue.type, issue.severity.value, issue.message)
    console.print(table)
    summary = report.summary
    console.print(
        f"[yellow]⚠[/yellow] {summary.warnings} warnings, {summary.errors} errors "
        f"(duplicates={summary.duplicates}, conflicts={summary.conflicts}, "
        f"scale mismatches={summary.scale_mismatches})"
    )


@app.command(name="seed-rules")
def seed_rules_cmd():
    """Store the bundled default rule sets."""

    async def _seed():
        try:
            return await seed_default_rule_sets(_repository())
        finally:
            await close_db()

    ids = asyncio.run(_seed())
    for name, rule_set_id in ids.items():
        console.print(f"  [green]✓[/green] {name}: {rule_set_id}")


@app.command()
def submit(
    file: Path = typer.Argument(..., help="Drawing set (PDF)"),
    name: str | None = typer.Option(None, "--name", help="Job name"),
    rule_set_id: str | None = typer.Option(None, "--rules", help="Stored rule set id"),
    webhook_url: str | None = typer.Option(None, "--webhook", help="Job event webhook URL"),
):
    """Create a QUEUED job for a drawing set."""
    from takeoffcalc.pipeline import JobService

    if not file.exists():
        console.print(f"[red]✗[/red] File not found: {file}")
        raise typer.Exit(1)

    async def _submit():
        try:
            return await JobService(_repository()).submit(
                file_path=str(file.resolve()),
                name=name or file.stem,
                rule_set_id=rule_set_id,
                webhook_url=webhook_url,
            )
        finally:
            await close_db()

    job = asyncio.run(_submit())
    console.print(f"[bold green]✓[/bold green] Job {job.id} queued")


@app.command()
def status(
    job_id: str = typer.Argument(..., help="Job id"),
):
    """Show a job's status and history."""

    async def _status():
        try:
            repository = _repository()
            return await repository.get_job(job_id), await repository.list_materials(job_id)
        finally:
            await close_db()

    try:
        job, materials = asyncio.run(_status())
    except TakeoffError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(1) from e

    console.print(f"[bold]Job {job.id}[/bold] {job.name or ''}")
    console.print(f"  Status: {job.status.value} ({job.progress}%)")
    if job.error:
        console.print(f"  [red]Error:[/red] {job.error}")
    console.print(f"  Materials: {len(materials)}")

    table = Table(title="History")
    table.add_column("Timestamp", style="dim")
    table.add_column("Status", style="cyan")
    table.add_column("Message")
    for entry in job.history:
        table.add_row(entry.timestamp.isoformat(), entry.status.value, entry.message or "")
    console.print(table)


@app.command(name="process-queue")
def process_queue_cmd():
    """Process every QUEUED job, one at a time."""
    from takeoffcalc.extraction import ExtractionCoordinator, OpenAIExtractionProvider
    from takeoffcalc.extraction.rasterizer import PdfiumRasterizer
    from takeoffcalc.pipeline import JobOrchestrator

    config = get_config()
    extraction = config.extraction
    provider = None
    if extraction.api_key:
        provider = OpenAIExtractionProvider(extraction.api_key, extraction.model, extraction.temperature)
    else:
        console.print("[yellow]⚠[/yellow] OPENAI_API_KEY not set; jobs will fail at feature analysis")

    async def _process():
        try:
            repository = _repository()
            orchestrator = JobOrchestrator(
                repository,
                ExtractionCoordinator(provider, extraction, strict_mode=config.validation.strict_mode),
                rasterizer=PdfiumRasterizer(),
                config=config,
            )
            added = await orchestrator.process_queued_jobs()
            console.print(f"[bold]Processing {added} queued jobs[/bold]")
            await orchestrator.join()
            await orchestrator.stop()
            return added
        finally:
            await close_db()

    added = asyncio.run(_process())
    console.print(f"[bold green]✓[/bold green] Processed {added} jobs")


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
