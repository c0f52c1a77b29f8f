"""CLI entrypoint for sheetsage."""

import json
import sys
from dataclasses import replace
from pathlib import Path

import click

from sheetsage import __version__
from sheetsage.config import AnalysisConfig
from sheetsage.contracts import AnalysisMethod, AnalysisStrategy
from sheetsage.errors import ProviderError, SheetSageError
from sheetsage.llm.router import SUPPORTED_PROVIDERS, LLMReasoner, get_current_config
from sheetsage.logging_config import configure_logging
from sheetsage.orchestrator import AnalysisOrchestrator
from sheetsage.sql.store import DuckDBStore
from sheetsage.taxonomy.manager import TaxonomyManager


def _read_items(path: Path) -> list:
    """Items from a JSON array file, or one item per non-empty line."""
    text = path.read_text(encoding="utf-8")
    if text.lstrip().startswith("["):
        items = json.loads(text)
        if not isinstance(items, list):
            raise click.BadParameter("JSON input must be an array", param_hint="--input")
        return items
    return [line.strip() for line in text.splitlines() if line.strip()]


def _split_names(value: str | None) -> list[str]:
    if not value:
        return []
    return [name.strip() for name in value.split(",") if name.strip()]


def _fail(e: SheetSageError) -> None:
    """Print a run-level error and exit non-zero."""
    if isinstance(e, ProviderError):
        click.echo(f"❌ Reasoner error ({e.cause}): {e.message}", err=True)
        sys.exit(2)
    click.echo(f"❌ {type(e).__name__}: {e}", err=True)
    sys.exit(3)


def _reasoner(provider: str | None, model: str | None) -> LLMReasoner:
    return LLMReasoner(provider=provider, model=model)


provider_option = click.option(
    "--provider",
    default=None,
    type=click.Choice(SUPPORTED_PROVIDERS),
    help="LLM provider (default: SS_LLM_PROVIDER or ollama)",
)
model_option = click.option(
    "--model",
    default=None,
    help="Model name (default: SS_LLM_MODEL or the provider default)",
)


@click.group()
@click.version_option(__version__)
@click.option("--log-level", default=None, help="Log level (default: SS_LOG_LEVEL or info)")
def main(log_level: str | None):
    """sheetsage - Ask questions about tabular data."""
    configure_logging(log_level)


@main.command()
@click.argument("question")
@click.option(
    "--db",
    "db_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Path to DuckDB database file",
)
@click.option("--table", default=None, help="Table to analyze (default: SS_TABLE_NAME or dataset)")
@click.option(
    "--strategy",
    "method",
    default=None,
    type=click.Choice([m.value for m in AnalysisMethod]),
    help="Skip strategy selection and use this method",
)
@click.option("--json", "as_json", is_flag=True, help="Print the full run as JSON")
@provider_option
@model_option
def ask(
    question: str,
    db_path: str,
    table: str | None,
    method: str | None,
    as_json: bool,
    provider: str | None,
    model: str | None,
):
    """Answer QUESTION about a DuckDB table."""
    config = AnalysisConfig.from_env()
    if table:
        config = replace(config, table_name=table)
    strategy = AnalysisStrategy(method=method, reasoning="Chosen on the command line") if method else None

    orchestrator = AnalysisOrchestrator(_reasoner(provider, model), DuckDBStore(db_path), config)
    try:
        run = orchestrator.analyze(question, strategy=strategy)
    except SheetSageError as e:
        _fail(e)
        return

    if as_json:
        click.echo(run.model_dump_json(indent=2))
        return

    result = run.result
    click.echo(f"\nMethod: {result.method.value}")
    if run.strategy and run.strategy.reasoning:
        click.echo(f"Why: {run.strategy.reasoning}")
    if result.generated_query:
        click.echo(f"\nQuery:\n{result.generated_query}")
    click.echo(f"\n{result.summary}")
    for insight in result.insights:
        click.echo(f"  • {insight}")
    if result.matches:
        click.echo(f"\nMatched rows: {len(result.matches)} of {result.total_rows}")
    elif result.results:
        click.echo(f"\nResult rows: {len(result.results)}" + (" (truncated)" if result.truncated else ""))
    if result.skipped_items:
        click.echo(f"⚠️  Skipped items: {result.skipped_items}")
    if result.partial:
        click.echo("⚠️  Partial result")


@main.command()
@click.option(
    "--input",
    "input_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Items to categorize: one per line, or a JSON array",
)
@click.option("--predefined", default=None, help="Comma-separated predefined categories")
@click.option("--format", "naming_format", default=None, help='Category naming format, e.g. "two words"')
@click.option("--context", default="", help="What the items are")
@click.option(
    "--taxonomy",
    "taxonomy_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="Taxonomy snapshot to load (if present) and save after the run",
)
@click.option("--out", default=None, type=click.Path(dir_okay=False), help="Write the result JSON here")
@provider_option
@model_option
def categorize(
    input_path: str,
    predefined: str | None,
    naming_format: str | None,
    context: str,
    taxonomy_path: str | None,
    out: str | None,
    provider: str | None,
    model: str | None,
):
    """Categorize items with a dynamic taxonomy."""
    items = _read_items(Path(input_path))
    manager = TaxonomyManager(_reasoner(provider, model))
    if taxonomy_path and Path(taxonomy_path).exists():
        manager.load(taxonomy_path)

    result = manager.categorize(
        items,
        predefined_categories=_split_names(predefined),
        context=context,
        naming_format=naming_format,
    )

    if taxonomy_path:
        manager.save(taxonomy_path)
    if out:
        Path(out).write_text(result.model_dump_json(indent=2), encoding="utf-8")
        click.echo(f"✅ Wrote {len(result.decisions)} decisions to {out}")
    else:
        for item, decision in zip(items, result.decisions):
            marker = " (new)" if decision.is_new else ""
            click.echo(f"{decision.category}{marker}\t{item}")

    click.echo(
        f"\nCategories: {result.stats.total_categories} "
        f"({result.stats.new_categories} derived, {result.stats.predefined_categories} predefined)"
    )


@main.group()
def taxonomy():
    """Inspect saved taxonomies."""
    pass


@taxonomy.command("stats")
@click.option(
    "--taxonomy",
    "taxonomy_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Taxonomy snapshot file",
)
def taxonomy_stats(taxonomy_path: str):
    """Show category usage of a taxonomy snapshot."""
    manager = TaxonomyManager(_reasoner(None, None))
    manager.load(taxonomy_path)
    stats = manager.get_statistics()

    click.echo(f"Categories: {stats.total_categories}  Items: {stats.total_items}")
    click.echo(f"Derived: {stats.new_categories}  Predefined: {stats.predefined_categories}\n")
    for category in stats.categories:
        click.echo(f"  {category.name:<30} {category.count:>6}  {category.percentage:>5.1f}%")


@main.command("config")
def show_config():
    """Print the current LLM and analysis configuration."""
    click.echo(
        json.dumps(
            {"llm": get_current_config(), "analysis": AnalysisConfig.from_env().as_dict()},
            indent=2,
        )
    )


if __name__ == "__main__":
    main()
