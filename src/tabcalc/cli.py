"""Command-line interface for tabcalc."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import click

from tabcalc import __version__
from tabcalc.errors import TabcalcError

_ERRORS = (TabcalcError, ValueError)


@click.group()
@click.version_option(version=__version__, prog_name="tabcalc")
def main() -> None:
    """tabcalc -- deterministic formula engine for YAML tabular models."""


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _project(path: Path) -> dict[str, Any]:
    """Attach the event log and load config for the directory holding *path*."""
    from tabcalc.logging.events import set_log_dir
    from tabcalc.project import load_project_config

    project_dir = path.resolve().parent
    try:
        config = load_project_config(project_dir)
    except TabcalcError as e:
        raise click.ClickException(str(e))
    set_log_dir(project_dir)
    return config


def _load(model_path: str) -> tuple[Any, dict[str, Any]]:
    from tabcalc.document import load_model

    path = Path(model_path)
    config = _project(path)
    try:
        return load_model(path), config
    except TabcalcError as e:
        raise click.ClickException(str(e))


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _fmt(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:,.6g}"
    return str(value)


_MODEL_ARG = click.argument("model_path", type=click.Path(exists=True, dir_okay=False))


# ---------------------------------------------------------------------------
# Init
# ---------------------------------------------------------------------------


@main.command()
@click.argument("directory", type=click.Path(file_okay=False), default=".")
def init(directory: str) -> None:
    """Scaffold a demo project (model.yaml + tabcalc.yaml) in DIRECTORY."""
    from tabcalc.commands import init as init_project

    path = init_project(Path(directory))
    click.echo(f"Created project model at {path}")


# ---------------------------------------------------------------------------
# Calculate
# ---------------------------------------------------------------------------


@main.command()
@_MODEL_ARG
@click.option("--scenario", "scenario_name", default=None, help="Calculate a named scenario.")
@click.option("--dry-run", is_flag=True, help="Print results without writing the model back.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def calculate(model_path: str, scenario_name: str | None, dry_run: bool, as_json: bool) -> None:
    """Calculate every formula in MODEL_PATH and write the values back.

    With --scenario the results are printed only; scenarios never
    overwrite the base model.
    """
    from tabcalc.commands import CalculateSummary, calculate as run
    from tabcalc.document import dump_model

    model, config = _load(model_path)
    try:
        result = run(model, scenario=scenario_name, config=config)
    except _ERRORS as e:
        raise click.ClickException(str(e))

    if not dry_run and scenario_name is None:
        Path(model_path).write_text(dump_model(result), encoding="utf-8")

    summary = CalculateSummary.from_model(result)
    if as_json:
        _echo_json(summary.model_dump(mode="json"))
        return
    for name, value in summary.scalars.items():
        click.echo(f"  {name:30s} {_fmt(value)}")
    if not dry_run and scenario_name is None:
        click.echo(f"Wrote {model_path}")


# ---------------------------------------------------------------------------
# Validate / Audit
# ---------------------------------------------------------------------------


@main.command()
@_MODEL_ARG
@click.option("--tolerance", type=float, default=None, help="Allowed absolute difference.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def validate(model_path: str, tolerance: float | None, as_json: bool) -> None:
    """Check stored values in MODEL_PATH against their formulas.

    Exits with status 1 when any stored value is stale.  Unit warnings
    are reported but do not change the status.
    """
    from tabcalc.commands import validate as run

    model, config = _load(model_path)
    try:
        result = run(model, tolerance=tolerance, config=config)
    except _ERRORS as e:
        raise click.ClickException(str(e))

    if as_json:
        _echo_json(result.model_dump(mode="json"))
    else:
        click.echo(f"Checked: {result.checked}")
        click.echo(f"Status: {'PASS' if result.valid else 'FAIL'}")
        for m in result.mismatches:
            click.echo(f"  {m.identifier}: stored {_fmt(m.current)}, calculated {_fmt(m.expected)}")
        for w in result.warnings:
            click.echo(f"Warning: {w}")
    if not result.valid:
        raise SystemExit(1)


@main.command()
@_MODEL_ARG
@click.argument("identifier")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def audit(model_path: str, identifier: str, as_json: bool) -> None:
    """Show the dependency tree of IDENTIFIER with current values."""
    from tabcalc.commands import AuditNode, audit as run

    model, config = _load(model_path)
    try:
        result = run(model, identifier, config=config)
    except _ERRORS as e:
        raise click.ClickException(str(e))

    if as_json:
        _echo_json(result.model_dump(mode="json"))
        return

    def show(node: AuditNode, depth: int) -> None:
        line = f"{'  ' * depth}{node.identifier} = {_fmt(node.value)}"
        if node.formula:
            line += f"  [{node.formula}]"
        if node.cycle:
            line += "  (cycle)"
        click.echo(line)
        for dep in node.dependencies:
            show(dep, depth + 1)

    show(result.root, 0)
    if result.error:
        click.echo(f"Calculation failed: {result.error}", err=True)


# ---------------------------------------------------------------------------
# Export / Import
# ---------------------------------------------------------------------------


@main.command("export")
@_MODEL_ARG
@click.argument("output", type=click.Path(dir_okay=False))
def export_cmd(model_path: str, output: str) -> None:
    """Export MODEL_PATH to the spreadsheet OUTPUT (.xlsx)."""
    from tabcalc.commands import export
    from tabcalc.xlsx import write_workbook

    model, config = _load(model_path)
    try:
        sheets = export(model, config=config)
        path = write_workbook(sheets, Path(output))
    except _ERRORS as e:
        raise click.ClickException(str(e))
    click.echo(f"Exported {len(sheets)} sheets to {path}")


@main.command("import")
@click.argument("workbook", type=click.Path(exists=True, dir_okay=False))
@click.argument("output", type=click.Path(dir_okay=False))
def import_cmd(workbook: str, output: str) -> None:
    """Rebuild a model from WORKBOOK (.xlsx) and write it to OUTPUT (.yaml)."""
    from tabcalc.commands import import_
    from tabcalc.document import dump_model
    from tabcalc.xlsx import read_workbook

    out = Path(output)
    config = _project(out)
    try:
        model = import_(read_workbook(Path(workbook)), config=config)
    except _ERRORS as e:
        raise click.ClickException(str(e))
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(dump_model(model), encoding="utf-8")
    click.echo(f"Imported {len(model.tables)} tables to {out}")
    if model.includes:
        click.echo(f"Includes to provide: {', '.join(inc.file for inc in model.includes)}")


# ---------------------------------------------------------------------------
# Compare / Variance
# ---------------------------------------------------------------------------

_REPORT_SUFFIXES = (".xlsx", ".yaml", ".yml")


def _write_variance_report(result: Any, path: Path) -> None:
    from tabcalc.commands import variance_report, variance_sheet

    if path.suffix.lower() == ".xlsx":
        from tabcalc.xlsx import write_workbook

        write_workbook([variance_sheet(result)], path)
        return
    import yaml

    path.parent.mkdir(parents=True, exist_ok=True)
    header = f"# Variance report\n# Threshold: {result.threshold:g}%\n\n"
    path.write_text(header + yaml.safe_dump(variance_report(result), sort_keys=False), encoding="utf-8")


@main.command()
@_MODEL_ARG
@click.option("-s", "--scenario", "scenarios", multiple=True, help="Scenario to include (repeatable).")
@click.option("--id", "identifiers", multiple=True, help="Output to tabulate (repeatable).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def compare(model_path: str, scenarios: tuple[str, ...], identifiers: tuple[str, ...], as_json: bool) -> None:
    """Compare outputs of MODEL_PATH across scenarios."""
    from tabcalc.commands import compare as run

    model, config = _load(model_path)
    try:
        result = run(model, list(scenarios) or None, list(identifiers) or None, config=config)
    except _ERRORS as e:
        raise click.ClickException(str(e))

    if as_json:
        _echo_json(result.model_dump(mode="json"))
        return
    click.echo(f"  {'':30s} " + " ".join(f"{s:>14s}" for s in result.scenarios))
    for row in result.rows:
        cells = " ".join(f"{_fmt(row.values.get(s)):>14s}" for s in result.scenarios)
        click.echo(f"  {row.identifier:30s} {cells}")


@main.command()
@click.argument("budget", type=click.Path(exists=True, dir_okay=False))
@click.argument("actual", type=click.Path(exists=True, dir_okay=False))
@click.option("--threshold", type=float, default=None, help="Alert threshold in percent.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False),
    default=None,
    help="Also write the report to a .xlsx or .yaml file.",
)
def variance(budget: str, actual: str, threshold: float | None, as_json: bool, output: str | None) -> None:
    """Budget-vs-actual variance between two models."""
    from tabcalc.commands import variance as run
    from tabcalc.document import load_model

    if output is not None and Path(output).suffix.lower() not in _REPORT_SUFFIXES:
        raise click.BadParameter(
            f"unsupported report format {Path(output).suffix or output!r}; use .xlsx or .yaml",
            param_hint="--output",
        )
    budget_model, config = _load(budget)
    try:
        result = run(budget_model, load_model(Path(actual)), threshold=threshold, config=config)
        if output is not None:
            _write_variance_report(result, Path(output))
    except _ERRORS as e:
        raise click.ClickException(str(e))
    if output is not None:
        click.echo(f"Variance report written to {output}", err=True)

    if as_json:
        data = result.model_dump(mode="json")
        data["favorable_count"] = result.favorable_count
        data["unfavorable_count"] = result.unfavorable_count
        data["alert_count"] = result.alert_count
        _echo_json(data)
        return
    for r in result.rows:
        flag = "!" if r.exceeds_threshold else " "
        mark = "+" if r.favorable else "-"
        click.echo(
            f"{flag} {r.identifier:30s} {_fmt(r.budget):>14s} {_fmt(r.actual):>14s} "
            f"{_fmt(r.variance):>14s} {r.variance_pct:8.2f}% {mark}"
        )
    click.echo(
        f"Favorable: {result.favorable_count}  Unfavorable: {result.unfavorable_count}  "
        f"Alerts (>= {result.threshold:g}%): {result.alert_count}"
    )


# ---------------------------------------------------------------------------
# Solver
# ---------------------------------------------------------------------------


@main.command()
@_MODEL_ARG
@click.option("--output", "output", required=True, help="Output identifier.")
@click.option("--vary", required=True, help="Input scalar to vary.")
@click.option("--range", "values", required=True, help="start,end,step")
@click.option("--vary2", default=None, help="Second input scalar (matrix mode).")
@click.option("--range2", "values2", default=None, help="start,end,step for --vary2")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def sensitivity(
    model_path: str,
    output: str,
    vary: str,
    values: str,
    vary2: str | None,
    values2: str | None,
    as_json: bool,
) -> None:
    """Tabulate OUTPUT over one or two input ranges."""
    from tabcalc.commands import sensitivity as run

    model, config = _load(model_path)
    try:
        result = run(model, output, vary, values, vary2, values2, config=config)
    except _ERRORS as e:
        raise click.ClickException(str(e))

    if as_json:
        _echo_json(result.model_dump(mode="json"))
        return
    if result.series is not None:
        for x, y in zip(result.values, result.series):
            click.echo(f"  {vary}={_fmt(x):>12s}  {output}={_fmt(y)}")
    elif result.matrix is not None:
        click.echo(f"  {'':14s} " + " ".join(f"{_fmt(v):>14s}" for v in result.values2 or []))
        for x, row in zip(result.values, result.matrix):
            click.echo(f"  {_fmt(x):>14s} " + " ".join(f"{_fmt(v):>14s}" for v in row))
    for err in result.errors:
        click.echo(f"  failed at {err.inputs}: {err.error}", err=True)


def _echo_goal(result: Any, as_json: bool) -> None:
    if as_json:
        _echo_json(result.model_dump(mode="json"))
        return
    click.echo(f"{result.vary} = {_fmt(result.value)}")
    click.echo(f"{result.output} = {_fmt(result.achieved)} (target {_fmt(result.target)})")
    click.echo(f"Iterations: {result.iterations}")


@main.command("goal-seek")
@_MODEL_ARG
@click.option("--output", "output", required=True, help="Output identifier.")
@click.option("--vary", required=True, help="Input scalar to vary.")
@click.option("--target", type=float, default=0.0, show_default=True, help="Target output value.")
@click.option("--lower", type=float, default=None, help="Lower bound for the input.")
@click.option("--upper", type=float, default=None, help="Upper bound for the input.")
@click.option("--tolerance", type=float, default=None, help="Allowed distance from the target.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def goal_seek(
    model_path: str,
    output: str,
    vary: str,
    target: float,
    lower: float | None,
    upper: float | None,
    tolerance: float | None,
    as_json: bool,
) -> None:
    """Find the VARY value that drives OUTPUT to TARGET."""
    from tabcalc.commands import goal_seek as run

    model, config = _load(model_path)
    try:
        result = run(model, output, vary, target, lower, upper, tolerance, config=config)
    except _ERRORS as e:
        raise click.ClickException(str(e))
    _echo_goal(result, as_json)


@main.command("break-even")
@_MODEL_ARG
@click.option("--output", "output", required=True, help="Output identifier.")
@click.option("--vary", required=True, help="Input scalar to vary.")
@click.option("--lower", type=float, default=None, help="Lower bound for the input.")
@click.option("--upper", type=float, default=None, help="Upper bound for the input.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def break_even(
    model_path: str,
    output: str,
    vary: str,
    lower: float | None,
    upper: float | None,
    as_json: bool,
) -> None:
    """Find the VARY value at which OUTPUT is zero."""
    from tabcalc.commands import break_even as run

    model, config = _load(model_path)
    try:
        result = run(model, output, vary, lower, upper, config=config)
    except _ERRORS as e:
        raise click.ClickException(str(e))
    _echo_goal(result, as_json)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


def _event_line(evt: dict[str, Any]) -> str:
    line = f"[{evt.get('ts', '')}] {evt.get('level', '').upper():7s} {evt.get('event_type', '')}: {evt.get('message', '')}"
    if evt.get("error_code"):
        line += f"  ({evt['error_code']})"
    return line


@main.command("events")
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
@click.option("--level", default=None, type=click.Choice(["info", "warning", "error"]), help="Filter by level.")
@click.option("--type", "event_type", default=None, help="Filter by event type.")
@click.option("--run-id", default=None, help="Show the log of one run, in write order.")
@click.option("--last", is_flag=True, help="Show the log of the most recent calculation.")
@click.option("--limit", default=100, type=int, help="Maximum events to show.")
def events_cmd(
    directory: str,
    level: str | None,
    event_type: str | None,
    run_id: str | None,
    last: bool,
    limit: int,
) -> None:
    """Show the structured event log of the project in DIRECTORY."""
    from tabcalc.logging.sink import EventSink

    sink = EventSink(Path(directory))
    if last:
        run_id = sink.last_run_id()
        if run_id is None:
            click.echo("No calculations logged.")
            return
    if run_id:
        events = sink.read_run_log(run_id)
        if not events:
            click.echo(f"No events found for run {run_id}.")
            return
    else:
        events = sink.read_global(level=level, event_type=event_type, limit=limit)
        if not events:
            click.echo("No events found.")
            return

    for evt in events:
        click.echo(_event_line(evt))
