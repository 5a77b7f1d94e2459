"""CLI entry point for the URL-shortener load runner."""

import json
import logging
import sys

import click

from shortload.config import ConfigurationError, get_settings
from shortload.evaluator import build_narrative, evaluate
from shortload.loader import ScenarioValidationError, builtin_scenarios, load_scenario
from shortload.report import (
    SummaryParseError,
    build_summary,
    load_summary,
    summary_to_json,
    verdict_to_dict,
    write_summary,
)
from shortload.runlog import append_record, read_records, record_from_result
from shortload.runner import execute

EXIT_CONFIG_ERROR = 1
EXIT_VERDICT_FAILED = 2


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose):
    """Load runner -- staged traffic against a URL-shortening service."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option(
    "--scenario",
    required=True,
    help="Built-in scenario name or path to a scenario file (YAML or JSON).",
)
@click.option(
    "--out",
    default=None,
    type=click.Path(),
    help="Optional output path for the run summary (JSON). Prints to stdout if omitted.",
)
@click.option(
    "--log",
    "log_path",
    default=None,
    type=click.Path(),
    help="Optional path to the run log (JSONL). Appends an entry when provided.",
)
@click.option("--seed", default=None, type=int, help="Seed for target sampling.")
@click.option(
    "--duration-scale",
    default=1.0,
    type=float,
    show_default=True,
    help="Multiply every stage duration (e.g. 0.1 for a smoke run).",
)
@click.option("--base-url", default=None, help="Override BASE_URL from the environment.")
@click.option("--strict", is_flag=True, help="Exit with status 2 when the verdict is fail.")
def run(scenario, out, log_path, seed, duration_scale, base_url, strict):
    """Run a scenario and evaluate its thresholds."""
    try:
        spec = load_scenario(scenario, duration_scale=duration_scale)
    except ScenarioValidationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    settings = get_settings()
    if base_url:
        settings = settings.model_copy(update={"BASE_URL": base_url})

    try:
        result = execute(spec, settings, seed=seed, install_signal_handlers=True)
    except ConfigurationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    summary = build_summary(result)
    if out:
        write_summary(summary, out)
        click.echo(f"Summary written to {out}")
    else:
        click.echo(summary_to_json(summary))

    click.echo("\n--- Verdict ---")
    click.echo(f"Status: {result.report.overall.upper()}")
    click.echo(build_narrative(result.report, {
        "Throughput (req/s)": result.aggregator.value("http_reqs", "rate"),
        "p95 latency (ms)": result.aggregator.value("http_req_duration", "p(95)"),
    }))

    if log_path:
        append_record(record_from_result(result), log_path)
        click.echo(f"Run logged to {log_path}")

    if strict and result.report.overall == "fail":
        sys.exit(EXIT_VERDICT_FAILED)


@main.command()
@click.option(
    "--summary",
    required=True,
    type=click.Path(exists=True),
    help="Path to a run summary written by 'run --out'.",
)
@click.option(
    "--scenario",
    required=True,
    help="Scenario whose thresholds to evaluate against.",
)
def check(summary, scenario):
    """Re-evaluate a saved run summary against a scenario's thresholds."""
    try:
        spec = load_scenario(scenario)
    except ScenarioValidationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    try:
        snapshot = load_summary(summary)
    except SummaryParseError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    report = evaluate(snapshot, spec.thresholds, spec.cache_rule)
    click.echo(f"Status: {report.overall.upper()}")
    click.echo(build_narrative(report))
    click.echo("\n" + json.dumps(verdict_to_dict(report), indent=2))


@main.command()
def scenarios():
    """List the built-in scenarios."""
    for name in builtin_scenarios():
        spec = load_scenario(name)
        click.echo(f"{name}: {spec.description}")


@main.command()
@click.option(
    "--log",
    "log_path",
    required=True,
    type=click.Path(),
    help="Run log written by 'run --log'.",
)
@click.option("--scenario", default=None, help="Only show runs of this scenario.")
def history(log_path, scenario):
    """Show past runs from a run log, oldest first."""
    records = read_records(log_path, scenario=scenario)
    if not records:
        click.echo("No runs logged.")
        return
    for r in records:
        line = (
            f"{r.ts}  {r.scenario:<18} {r.verdict.upper():<4} "
            f"reqs={r.requests} dropped={r.dropped} incomplete={r.incomplete}"
        )
        if r.stopped:
            line += " (stopped)"
        click.echo(line)
        for expr in r.failed_thresholds:
            click.echo(f"    failed: {expr}")


if __name__ == "__main__":
    main()
