"""Psychoeducational Score Extraction CLI."""

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from psyscore.config import settings
from psyscore.errors import MissingFieldsError, PsyscoreError
from psyscore.logging import configure_logging
from psyscore.models import InstrumentKind, ManualOverride, ScoreScale
from psyscore.pipeline.runner import ReportResult, SourceDocument, run_report_sync
from psyscore.pipeline.stage_classify import classify as classify_score
from psyscore.pipeline.stage_narrative import fill_cognitive_template
from psyscore.pipeline.stage_normalize import DOCX_DECODER, OCR_ENGINE, PDF_DECODER
from psyscore.pipeline.stage_render import render_html
from psyscore.pipeline.stage_segment import SECTION_SPECS

app = typer.Typer(
    name="psyscore",
    help="Extract standardized test scores from psychoeducational reports",
    add_completion=False,
)
console = Console()


@app.callback()
def main(
    log_level: str = typer.Option(settings.log_level, help="Logging level"),
) -> None:
    configure_logging(log_level)


def parse_override(text: str) -> ManualOverride:
    """Parse ``WAIS.FSIQ=96`` or ``WAIS.FSIQ=96:39`` (score:percentile)."""
    key, sep, value = text.partition("=")
    score, _, percentile = value.partition(":")
    if not sep or "." not in key:
        raise typer.BadParameter(f"Expected INSTRUMENT.FIELD=SCORE[:PERCENTILE], got {text!r}")
    try:
        return ManualOverride(
            field_key=key.strip(),
            score=int(score) if score.strip() else None,
            percentile=float(percentile) if percentile.strip() else None,
        )
    except ValueError as e:
        raise typer.BadParameter(f"Invalid override {text!r}: {e}") from e


def _load(paths: list[Path]) -> list[SourceDocument]:
    sources = []
    for path in paths:
        if not path.is_file():
            console.print(f"[red]Not a file:[/red] {path}")
            raise typer.Exit(code=1)
        sources.append(SourceDocument.from_path(path))
    return sources


def _run(
    paths: list[Path],
    student: str,
    age: Optional[str],
    overrides: Optional[list[str]],
) -> ReportResult:
    return run_report_sync(
        _load(paths),
        student_label=student,
        overrides=[parse_override(o) for o in overrides or []],
        age=age,
    )


@app.command()
def extract(
    paths: list[Path] = typer.Argument(..., help="Report files in upload order"),
    student: str = typer.Option("", help="Student name or identifier"),
    age: Optional[str] = typer.Option(None, help="Age at testing, e.g. '10 years, 2 months'"),
    override: Optional[list[str]] = typer.Option(
        None, help="Manual value, INSTRUMENT.FIELD=SCORE[:PERCENTILE]"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print flat keys as JSON"),
) -> None:
    """Extract and merge scores from one or more reports."""
    result = _run(paths, student, age, override)

    if as_json:
        console.print_json(json.dumps(result.score_map.to_flat()))
        return

    table = Table(title=f"Scores ({len(result.score_map)})")
    table.add_column("Field")
    table.add_column("Score", justify="right")
    table.add_column("Percentile", justify="right")
    table.add_column("Classification")
    table.add_column("Source", style="dim")
    for record in result.score_map.records():
        percentile = "" if record.percentile is None else f"{record.percentile:g}"
        if record.percentile_estimated:
            percentile += "*"
        table.add_row(
            record.field_key,
            str(record.score),
            percentile,
            record.classification or "",
            f"{record.source_strategy.value} ({record.source_document})",
        )
    console.print(table)

    if result.unresolved:
        console.print(f"[yellow]Unresolved:[/yellow] {', '.join(result.unresolved)}")


@app.command()
def sections(
    path: Path = typer.Argument(..., help="Report file"),
) -> None:
    """Show which report sections could be located."""
    result = _run([path], "", None, None)
    table = Table(title=path.name)
    table.add_column("Section")
    table.add_column("Status")
    table.add_column("Tier")
    table.add_column("Characters", justify="right")
    for section_id in SECTION_SPECS:
        extract = result.section(section_id)
        if extract is None:
            table.add_row(section_id, "[dim]no document[/dim]", "", "")
            continue
        colour = "green" if extract.ok else "yellow"
        table.add_row(
            section_id,
            f"[{colour}]{extract.status.value}[/{colour}]",
            extract.tier or "",
            str(len(extract.text or "")),
        )
    console.print(table)


@app.command()
def render(
    paths: list[Path] = typer.Argument(..., help="Report files in upload order"),
    student: str = typer.Option("", help="Student name or identifier"),
    age: Optional[str] = typer.Option(None, help="Age at testing"),
    override: Optional[list[str]] = typer.Option(None, help="Manual value, INSTRUMENT.FIELD=SCORE[:PERCENTILE]"),
    output: Path = typer.Option(Path("./score_tables.html"), help="HTML output file"),
) -> None:
    """Render the canonical score tables as an HTML fragment."""
    result = _run(paths, student, age, override)
    html = render_html(student, result.score_map, result.selection)
    output.write_text(html, encoding="utf-8")
    console.print(f"[bold blue]Wrote {len(result.tables)} tables:[/bold blue] {output}")


@app.command()
def narrative(
    instrument: InstrumentKind = typer.Argument(..., help="WAIS or WPPSI"),
    first_name: str = typer.Option(..., help="Student's first name"),
    pronouns: str = typer.Option("they", help="he, she or they"),
    paths: Optional[list[Path]] = typer.Option(None, "--file", help="Report files to read scores from"),
    override: Optional[list[str]] = typer.Option(None, help="Manual value, INSTRUMENT.FIELD=SCORE[:PERCENTILE]"),
    strengths: str = typer.Option("", help="Summary text for relative strengths"),
    weaker_areas: str = typer.Option("", help="Summary text for weaker areas"),
) -> None:
    """Write the cognitive section for a WAIS-IV or WPPSI-IV administration."""
    result = _run(paths or [], first_name, None, override)
    try:
        text = fill_cognitive_template(
            instrument,
            first_name,
            result.score_map,
            pronouns=pronouns,
            strengths=strengths,
            weaker_areas=weaker_areas,
        )
    except MissingFieldsError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=2)
    console.print(text, markup=False, highlight=False)


@app.command()
def classify(
    value: float = typer.Argument(..., help="Score to classify"),
    scale: ScoreScale = typer.Option(ScoreScale.STANDARD, help="Score scale"),
    instrument: Optional[InstrumentKind] = typer.Option(None, help="Family whose labels apply"),
) -> None:
    """Print the qualitative label for a single score."""
    try:
        console.print(classify_score(value, scale, instrument))
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def status() -> None:
    """Show which decoders can be loaded."""
    console.print("[bold blue]Decoder Status[/bold blue]")
    for cache in (PDF_DECODER, DOCX_DECODER, OCR_ENGINE):
        try:
            cache.get()
            console.print(f"  {cache.name}: [green]available[/green]")
        except PsyscoreError as e:
            console.print(f"  {cache.name}: [red]unavailable[/red] ({e})")


if __name__ == "__main__":
    app()
