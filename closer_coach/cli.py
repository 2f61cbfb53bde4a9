import typer
import json
import os
import logging
from pathlib import Path
from typing import Optional, Dict, List
from rich.console import Console
from rich.table import Table
from rich.progress import track

from .importers.plaintext import TranscriptTextImporter
from .importers.asr import AsrImporter
from .importers.ringover import RingoverImporter
from .llm_scorer import LLMScorer, MODEL_CONFIGS
from .objections import ObjectionClassifier, calculate_objection_stats
from .scoring import OutputGenerator, get_score_level
from .scoring_queue import ScoringQueue
from .speakers import ROLE_HINTS, swap_speakers
from .call_context import CONTEXT_LABELS
from .schemas import CallRecord, CallContext, ReferenceScript, ScoredCall, CallObjectionData

app = typer.Typer(help="CLOSER Coach - LLM-powered sales call scoring")
console = Console()
logger = logging.getLogger(__name__)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def _load_records(input_dir: Path) -> List[CallRecord]:
    if not input_dir.exists():
        console.print(f"[red]Error: Input directory {input_dir} does not exist[/red]")
        raise typer.Exit(1)

    json_files = sorted(input_dir.glob("*.json"))
    if not json_files:
        console.print(f"[red]Error: No JSON files found in {input_dir}[/red]")
        raise typer.Exit(1)

    records = []
    for json_file in json_files:
        try:
            with open(json_file) as f:
                records.append(CallRecord.model_validate(json.load(f)))
        except (OSError, ValueError) as e:
            console.print(f"[red]✗[/red] Skipping {json_file.name}: {e}")
    return records


def _load_script(script_path: Optional[Path]) -> Optional[ReferenceScript]:
    if script_path is None:
        return None
    try:
        with open(script_path) as f:
            return ReferenceScript.model_validate(json.load(f))
    except (OSError, ValueError) as e:
        console.print(f"[red]Error loading reference script {script_path}: {e}[/red]")
        raise typer.Exit(1)


def _build_scorer(llm_model: str) -> LLMScorer:
    try:
        return LLMScorer(model=llm_model)
    except ValueError as e:
        console.print(f"[red]Error initializing LLM scorer: {e}[/red]")
        console.print("[yellow]Make sure OPENAI_API_KEY is set in .env file[/yellow]")
        raise typer.Exit(1)


@app.command()
def parse(
    input_dir: Path = typer.Option(Path("data/transcripts"), "--in", help="Directory of .txt transcripts and ASR .json files"),
    output_dir: Path = typer.Option(Path("data/calls"), "--out", help="Output directory for call record JSON"),
    role_hint: Optional[str] = typer.Option(None, "--role-hint", help="caller (rep placed the call), callee (rep received it) or default"),
    asr_strategy: str = typer.Option("pause", "--asr-strategy", help="Speaker attribution for ASR output: pause or content"),
    context: CallContext = typer.Option(CallContext.NEW_LEAD, "--context", help="Call context recorded on every parsed call"),
    swap: bool = typer.Option(False, "--swap-speakers", help="Flip rep/prospect on every parsed call")
):
    """Parse raw transcripts into call records with rep/prospect attribution."""

    if not input_dir.exists():
        console.print(f"[red]Error: Input directory {input_dir} does not exist[/red]")
        raise typer.Exit(1)

    if role_hint is not None and role_hint not in ROLE_HINTS:
        console.print(f"[red]Error: --role-hint must be one of {', '.join(ROLE_HINTS)}, got '{role_hint}'[/red]")
        raise typer.Exit(1)

    txt_files = sorted(input_dir.glob("*.txt"))
    json_files = sorted(input_dir.glob("*.json"))
    if not txt_files and not json_files:
        console.print(f"[red]Error: No .txt or .json files found in {input_dir}[/red]")
        raise typer.Exit(1)

    try:
        asr_importer = AsrImporter(strategy=asr_strategy)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    output_dir.mkdir(parents=True, exist_ok=True)
    text_importer = TranscriptTextImporter()
    ringover_importer = RingoverImporter()

    files_processed = 0
    files_failed = 0

    for transcript_file in track(txt_files + json_files, description="Parsing transcripts..."):
        try:
            if transcript_file.suffix == '.json':
                record = asr_importer.parse_file(transcript_file)
            else:
                content = transcript_file.read_text(encoding='utf-8')
                if ringover_importer.looks_like_export(content):
                    record = ringover_importer.parse_file(transcript_file)
                else:
                    record = text_importer.parse_file(transcript_file, role_hint=role_hint)

            record.call_context = context
            if swap:
                record.segments = swap_speakers(record.segments)

            if not record.segments:
                console.print(f"[yellow]Warning: {transcript_file.name} produced no segments[/yellow]")

            output_path = output_dir / f"{record.call_id}.json"
            with open(output_path, 'w') as f:
                json.dump(record.model_dump(mode='json'), f, indent=2)

            files_processed += 1
            logger.debug(f"{transcript_file.name} -> {output_path.name} ({len(record.segments)} segments, {record.source})")

        except (OSError, ValueError) as e:
            files_failed += 1
            console.print(f"[red]✗[/red] Failed to parse {transcript_file.name}: {e}")

    console.print(f"\n[bold green]Parse completed![/bold green]")
    console.print(f"Files processed: {files_processed}")
    console.print(f"Files failed: {files_failed}")
    console.print(f"Output directory: {output_dir}")


@app.command()
def score(
    input_dir: Path = typer.Option(Path("data/calls"), "--in", help="Directory of call record JSON files"),
    output_dir: Path = typer.Option(Path("out"), "--out", help="Output directory for score results"),
    context: Optional[CallContext] = typer.Option(None, "--context", help="Override the call context stored on each record"),
    script_path: Optional[Path] = typer.Option(None, "--script", help="Reference script JSON"),
    llm_model: str = typer.Option(os.getenv("DEFAULT_LLM_MODEL", "gpt-4o"), "--model", help="LLM model to use"),
    workers: int = typer.Option(2, "--workers", min=1, help="Calls scored concurrently"),
    include_objections: bool = typer.Option(False, "--include-objections", help="Also run objection classification")
):
    """Score call records against the CLOSER framework and write reports."""

    records = {r.call_id: r for r in _load_records(input_dir)}
    if not records:
        console.print("[red]No call records could be loaded[/red]")
        raise typer.Exit(1)

    reference_script = _load_script(script_path)
    llm_scorer = _build_scorer(llm_model)
    classifier = ObjectionClassifier(llm_scorer) if include_objections else None

    output_dir.mkdir(parents=True, exist_ok=True)
    results: Dict[str, ScoredCall] = {}

    def score_one(call_id: str) -> float:
        scored = llm_scorer.score_record(records[call_id], reference_script, context)
        results[call_id] = scored
        if classifier is not None:
            try:
                scored.objections = classifier.classify(call_id, records[call_id].segments)
            except Exception as e:
                logger.error(f"[{call_id}] Objection classification failed: {e}")
        return scored.result.overall_score

    queue = ScoringQueue(score_one, max_concurrent=workers, poll_interval=0.5, dispatch_interval=0.1)
    console.print(f"Scoring {len(records)} calls with {llm_model} ({workers} at a time)...")
    queue.add(records.keys())
    with console.status("Scoring calls..."):
        queue.wait_until_idle()
    queue.shutdown()

    status = queue.status()
    for item in status["items"]:
        if item.status == "error":
            console.print(f"[red]✗[/red] Failed to score {item.call_id}: {item.error}")

    scored_calls = [results[call_id] for call_id in records if call_id in results]
    if not scored_calls:
        console.print("[red]No calls were successfully scored[/red]")
        raise typer.Exit(1)

    generator = OutputGenerator()
    console.print("Generating output files...")
    generator.generate_json_output(scored_calls, output_dir / "scores.json")
    generator.generate_csv_output(scored_calls, output_dir / "scores.csv")
    generator.generate_leaderboard(scored_calls, output_dir / "leaderboard.md")

    table = Table(title=f"CLOSER Scoring Results ({llm_model})")
    table.add_column("Call", style="cyan")
    table.add_column("Rep")
    table.add_column("Context")
    table.add_column("Score", style="magenta")
    table.add_column("Level")
    if include_objections:
        table.add_column("Objections")

    for scored in sorted(scored_calls, key=lambda s: s.result.overall_score, reverse=True):
        level = "fallback" if scored.result.is_fallback else get_score_level(scored.result.overall_score)
        row = [scored.call_id, scored.rep_name or "-", CONTEXT_LABELS[scored.call_context], f"{scored.result.overall_score:.1f}", level]
        if include_objections:
            row.append(str(len(scored.objections)))
        table.add_row(*row)

    console.print(table)
    console.print(f"\n[bold green]Scoring completed![/bold green] {len(scored_calls)} scored, {status['error']} failed")
    console.print(f"Output directory: {output_dir}")


@app.command()
def objections(
    input_dir: Path = typer.Option(Path("data/calls"), "--in", help="Directory of call record JSON files"),
    output_dir: Path = typer.Option(Path("out"), "--out", help="Output directory for objection statistics"),
    llm_model: str = typer.Option(os.getenv("DEFAULT_LLM_MODEL", "gpt-4o"), "--model", help="LLM model to use"),
    top: int = typer.Option(10, "--top", min=1, help="How many top objections to print")
):
    """Extract objections from call records and print handling statistics."""

    records = _load_records(input_dir)
    classifier = ObjectionClassifier(_build_scorer(llm_model))

    call_data = []
    for record in track(records, description="Classifying objections..."):
        found = classifier.classify(record.call_id, record.segments)
        call_data.append(CallObjectionData(
            call_id=record.call_id,
            rep_id=record.rep_id or "unknown",
            rep_name=record.rep_name or "Unknown Rep",
            call_date=record.call_date,
            outcome=record.outcome,
            objections=found,
        ))

    stats = calculate_objection_stats(call_data)

    output_dir.mkdir(parents=True, exist_ok=True)
    with open(output_dir / "objection_stats.json", 'w') as f:
        json.dump({
            "stats": stats.model_dump(mode='json'),
            "call_details": [c.model_dump(mode='json') for c in call_data],
        }, f, indent=2)

    summary = Table(title="Objection Handling")
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", style="magenta")
    summary.add_row("Total Objections", str(stats.total_objections))
    summary.add_row("Avg Handling Score", str(stats.avg_handling_score))
    summary.add_row("AAA Usage", f"{stats.aaa_usage_rate}%")
    console.print(summary)

    if stats.by_category:
        category_table = Table(title="By Category")
        for column in ("Category", "Count", "Avg Score", "Success %", "AAA %"):
            category_table.add_column(column)
        for c in stats.by_category:
            category_table.add_row(c.category, str(c.count), str(c.avg_score), str(c.success_rate), str(c.aaa_rate))
        console.print(category_table)

    if stats.by_rep:
        rep_table = Table(title="By Rep")
        for column in ("Rep", "Objections", "Avg Score", "Success %", "AAA %", "Strongest", "Weakest"):
            rep_table.add_column(column)
        for r in stats.by_rep:
            rep_table.add_row(
                r.rep_name, str(r.total_objections), str(r.avg_handling_score),
                str(r.success_rate), str(r.aaa_rate), r.strongest_category, r.weakest_category
            )
        console.print(rep_table)

    for i, t in enumerate(stats.top_objections[:top], 1):
        console.print(f"{i}. [bold]{t.objection}[/bold] ({t.category}, x{t.frequency}, avg {t.avg_handling_score})")

    console.print(f"\n[bold green]Objection analysis completed![/bold green]")
    console.print(f"Output: {output_dir / 'objection_stats.json'}")


@app.command()
def models():
    """List known model profiles."""
    table = Table(title="Model Profiles")
    table.add_column("Model", style="cyan")
    table.add_column("Token Param")
    table.add_column("Temperature")
    table.add_column("Context Window")
    table.add_column("Description")
    for name, config in MODEL_CONFIGS.items():
        table.add_row(
            name,
            config["token_param"],
            "yes" if config["supports_temperature"] else "fixed",
            f"{config['context_window']:,}",
            config["description"],
        )
    console.print(table)


if __name__ == "__main__":
    app()
