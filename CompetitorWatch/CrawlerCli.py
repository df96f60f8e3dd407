"""Command line entry points: detect a source, store it, crawl."""
import json
import logging
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from CompetitorWatch.Config import Settings, load_settings
from CompetitorWatch.ConfigDetector import ConfigDetector
from CompetitorWatch.CrawlPipeline import CrawlEventStream, CrawlPipeline
from CompetitorWatch.Errors import CrawlerError
from CompetitorWatch.Models import Source
from CompetitorWatch.ParserConfig import validate_parser_config
from CompetitorWatch.Persistence import SqliteRepository
from CompetitorWatch.Summarizer import OllamaSummarizer


app = typer.Typer(
    name="competitor-watch",
    help="Competitor news and product crawler",
    add_completion=False,
)
console = Console()


def _setup(verbose: bool = False) -> Settings:
    settings = load_settings()
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(level=level, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    return settings


@app.command()
def detect(
    url: str = typer.Argument(..., help="Page, feed or API URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show the detection trace"),
):
    """Guess the parser type and configuration for a URL."""
    settings = _setup(verbose)
    detector = ConfigDetector(verbose=verbose, settings=settings)
    try:
        result = detector.detect(url)
    except CrawlerError as e:
        console.print(f"[red]Detection failed: {e}[/red]")
        raise typer.Exit(1)
    finally:
        detector.close()
    console.print_json(json.dumps(result.to_wire(), ensure_ascii=False))


@app.command("add-source")
def add_source(
    name: str = typer.Argument(..., help="Display name"),
    url: str = typer.Argument(..., help="Source URL"),
    parser_type: Optional[str] = typer.Option(None, "--type", "-t", help="Parser type, e.g. rss or html-list"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Parser configuration as JSON"),
    use_detector: bool = typer.Option(False, "--detect", help="Take type and configuration from detection"),
    genre: Optional[str] = typer.Option(None, "--genre", help="Free-form grouping label"),
):
    """Validate a parser configuration and store the source."""
    settings = _setup()

    if use_detector:
        detector = ConfigDetector(settings=settings)
        try:
            detection = detector.detect(url)
        except CrawlerError as e:
            console.print(f"[red]Detection failed: {e}[/red]")
            raise typer.Exit(1)
        finally:
            detector.close()
        parser_type = parser_type or detection.parser_type
        document = detection.parser_config
        console.print(f"Detected [bold]{detection.parser_type}[/bold] ({detection.confidence}): "
                      f"{detection.description}")
    else:
        if not parser_type:
            console.print("[red]Either --type or --detect is required.[/red]")
            raise typer.Exit(1)
        try:
            document = json.loads(config) if config else {}
        except ValueError as e:
            console.print(f"[red]--config is not valid JSON: {e}[/red]")
            raise typer.Exit(1)

    try:
        document = validate_parser_config(parser_type, document)
    except CrawlerError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    repository = SqliteRepository(settings.db_path)
    try:
        source = repository.add_source(Source(name=name, url=url, parser_type=parser_type,
                                              parser_config=document, genre=genre))
    finally:
        repository.close()
    console.print(f"[green]Added source #{source.id} {source.name} ({source.parser_type})[/green]")


@app.command()
def sources(
    show_all: bool = typer.Option(False, "--all", "-a", help="Include inactive sources"),
):
    """List configured sources with their latest crawl."""
    settings = _setup()
    repository = SqliteRepository(settings.db_path)
    try:
        table = Table(title="Sources")
        table.add_column("ID", justify="right")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("URL", overflow="fold")
        table.add_column("Last crawl")
        table.add_column("Found/New", justify="right")

        for source in repository.list_sources(active_only=not show_all):
            log = repository.latest_crawl_log(source.id)
            if log is None:
                last, counts = "-", "-"
            else:
                color = {'success': 'green', 'partial': 'yellow'}.get(log.status, 'red')
                last = f"[{color}]{log.status}[/{color}] {log.finished_at:%Y-%m-%d %H:%M}"
                counts = f"{log.articles_found}/{log.new_articles}"
            name = source.name if source.is_active else f"[dim]{source.name}[/dim]"
            table.add_row(str(source.id), name, source.parser_type, source.url, last, counts)
    finally:
        repository.close()
    console.print(table)


@app.command()
def crawl(
    source_id: Optional[List[int]] = typer.Option(None, "--source-id", "-s", help="Crawl only these sources"),
    stream: bool = typer.Option(False, "--stream", help="Print progress events as they happen"),
    no_summary: bool = typer.Option(False, "--no-summary", help="Skip the summarization step"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show detailed output"),
):
    """Crawl the active sources and store new articles."""
    settings = _setup(verbose)
    repository = SqliteRepository(settings.db_path)
    summarizer = None
    if not no_summary:
        summarizer = OllamaSummarizer(base_url=settings.ollama_base_url,
                                      model=settings.ollama_model,
                                      timeout_s=settings.ollama_timeout_s,
                                      retries=settings.ollama_retries)
    pipeline = CrawlPipeline(repository, summarizer=summarizer, settings=settings)

    try:
        selected = repository.list_sources(active_only=True, source_ids=source_id or None)
        if not selected:
            console.print("[yellow]No active sources to crawl.[/yellow]")
            return

        if stream:
            event_stream = CrawlEventStream(pipeline, selected)
            for event in event_stream:
                console.print_json(json.dumps(event, ensure_ascii=False, default=str))
            event_stream.join()
            results = event_stream.results or {}
        else:
            results = pipeline.crawl_sources(selected)
    finally:
        pipeline.shutdown()
        repository.close()

    table = Table(title="Crawl results")
    table.add_column("Source")
    table.add_column("Status")
    table.add_column("Found", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Errors")
    for name, outcome in results.items():
        color = {'success': 'green', 'partial': 'yellow'}.get(outcome.status, 'red')
        table.add_row(name, f"[{color}]{outcome.status}[/{color}]", str(outcome.articles_found),
                      str(outcome.new_articles), "\n".join(outcome.errors) or "-")
    console.print(table)

    if any(outcome.status == 'error' for outcome in results.values()):
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
