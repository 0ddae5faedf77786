"""Model documents: YAML text <-> :class:`~tabcalc.model.Model`.

Document layout::

    _version: "1.0"
    includes:
      - file: shared.yaml
        as: shared
    sales:                       # table: lists and "=" formulas
      revenue: [100, 200, 300]
      cost: [40, 90, 120]
      profit: "=revenue - cost"  # row-wise
      total: "=SUM(profit)"      # table aggregation
    tax_rate: 0.25               # literal scalar
    net: "=sales.total * (1 - tax_rate)"
    margin:                      # scalar with value and formula
      value: 0.5
      formula: "=net / SUM(sales.revenue)"
    assumptions:                 # section: assumptions.growth, ...
      growth: {value: 0.05, unit: "%"}
    costs:                       # table entries in mapping form
      fixed: {value: [10, 10, 10], unit: CAD, source: ledger}
      variable: {formula: "=fixed * 2", notes: estimate}
    scenarios:
      downside: {tax_rate: 0.3}

Any scalar or table entry written in mapping form may carry the metadata
keys ``unit``, ``notes`` and ``source``.
"""

from __future__ import annotations

import datetime
import logging
import os
import re
from pathlib import Path
from typing import Any, Callable

import yaml

from tabcalc.errors import (
    IncludeCycleError,
    IncludeError,
    ModelError,
    ModelParseError,
    TabcalcError,
)
from tabcalc.formulas.parser import iter_ref_uses, parse_formula
from tabcalc.logging.events import EventType, emit_info
from tabcalc.model import Include, Model, Scalar, Table
from tabcalc.values import Column, Metadata, coerce_value, value_type

logger = logging.getLogger(__name__)

RESERVED_KEYS = ("_version", "includes", "scenarios")

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Reader = Callable[[Path], str]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _check_name(name: Any, path: str) -> str:
    if not isinstance(name, str):
        raise ModelParseError(f"name must be a string, got {name!r}", path=path)
    if not _NAME_RE.match(name):
        raise ModelParseError(f"invalid name {name!r}", path=path)
    return name


def _is_formula(value: Any) -> bool:
    return isinstance(value, str) and value.lstrip().startswith("=")


def _is_scalar_mapping(value: Any) -> bool:
    return isinstance(value, dict) and ("value" in value or "formula" in value)


def _is_column_mapping(value: Any) -> bool:
    return isinstance(value, dict) and isinstance(value.get("value"), list)


def _metadata(raw: dict[str, Any], path: str) -> Metadata:
    fields = {}
    for key in Metadata.FIELDS:
        value = raw.get(key)
        if value is None:
            continue
        if isinstance(value, (list, dict, bool)):
            raise ModelParseError(f"{key} must be text", path=f"{path}.{key}")
        fields[key] = str(value)
    return Metadata(**fields)


def _literal(value: Any, path: str) -> Any:
    if value is None:
        return None
    try:
        return coerce_value(value, value_type(value))
    except (TypeError, ValueError) as exc:
        raise ModelParseError(str(exc), path=path) from exc


def _scalar(name: str, raw: Any, path: str) -> Scalar:
    if _is_scalar_mapping(raw):
        unknown = set(raw) - {"value", "formula", *Metadata.FIELDS}
        if unknown:
            raise ModelParseError(f"unexpected keys {sorted(unknown)}", path=path)
        formula = raw.get("formula")
        if formula is not None and not _is_formula(formula):
            raise ModelParseError("formula must be a string starting with '='", path=f"{path}.formula")
        if isinstance(raw.get("value"), (list, dict)):
            raise ModelParseError("a scalar value must be a single value", path=f"{path}.value")
        return Scalar(name, _literal(raw.get("value"), f"{path}.value"), formula, _metadata(raw, path))
    if _is_formula(raw):
        return Scalar(name, None, raw.strip())
    if isinstance(raw, (list, dict)):
        raise ModelParseError(f"cannot read {type(raw).__name__} as a scalar", path=path)
    return Scalar(name, _literal(raw, path))


def _aggregation_entries(table_name: str, formulas: dict[str, str], column_names: set[str]) -> set[str]:
    """Names among *formulas* that reduce columns to a single value.

    An entry is an aggregation when it reads at least one identifier
    inside a reducing argument (or by index) and never reads a column of
    its own table one row at a time.  Formula entries feeding row-wise
    reads are columns themselves, so the split is found by iterating to a
    fixed point.
    """
    uses = {}
    for name, formula in formulas.items():
        try:
            uses[name] = list(iter_ref_uses(parse_formula(formula)))
        except TabcalcError as exc:
            exc.attach(f"{table_name}.{name}", formula)
            raise

    candidates = {name for name, refs in uses.items() if any(u.in_range or u.indexed for u in refs)}
    changed = True
    while changed:
        changed = False
        row_wise = column_names | (set(formulas) - candidates)
        for name in sorted(candidates):
            for use in uses[name]:
                if use.in_range or use.indexed:
                    continue
                local = use.name
                if local.startswith(f"{table_name}."):
                    local = local[len(table_name) + 1:]
                if local in row_wise:
                    candidates.discard(name)
                    changed = True
                    break
    return candidates


def _table_entry(raw: Any, path: str) -> tuple[Any, Metadata]:
    """Split a table entry into its list or formula and its metadata."""
    if not isinstance(raw, dict):
        return raw, Metadata()
    unknown = set(raw) - {"value", "formula", *Metadata.FIELDS}
    if unknown:
        raise ModelParseError(f"unexpected keys {sorted(unknown)}", path=path)
    if ("value" in raw) == ("formula" in raw):
        raise ModelParseError("table entry needs exactly one of 'value' or 'formula'", path=path)
    body = raw["value"] if "value" in raw else raw["formula"]
    if "formula" in raw and not _is_formula(body):
        raise ModelParseError("formula must be a string starting with '='", path=f"{path}.formula")
    return body, _metadata(raw, path)


def _table(name: str, raw: dict[str, Any]) -> Table:
    table = Table(name)
    entries: dict[str, tuple[Any, Metadata]] = {}
    formulas: dict[str, str] = {}
    for col_name, value in raw.items():
        path = f"{name}.{col_name}"
        _check_name(col_name, path)
        body, meta = _table_entry(value, path)
        entries[col_name] = (body, meta)
        if _is_formula(body):
            formulas[col_name] = body.strip()
        elif not isinstance(body, list):
            raise ModelParseError("table entries must be lists or '=' formulas", path=path)

    data_names = {c for c in raw if c not in formulas}
    aggregations = _aggregation_entries(name, formulas, data_names)
    for col_name, (body, meta) in entries.items():
        if col_name in aggregations:
            table.add_aggregation(Scalar(col_name, None, formulas[col_name], meta))
        elif col_name in formulas:
            table.add_column(Column(col_name, formula=formulas[col_name], metadata=meta))
        else:
            table.add_column(Column(col_name, body, metadata=meta))
    table.validate()
    return table


def _includes(raw: Any) -> list[Include]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ModelParseError("includes must be a list", path="includes")
    out = []
    for i, item in enumerate(raw):
        path = f"includes[{i}]"
        if not isinstance(item, dict) or "file" not in item or "as" not in item:
            raise ModelParseError("include entries need 'file' and 'as'", path=path)
        if not isinstance(item["file"], str) or not item["file"]:
            raise ModelParseError("include file must be a non-empty string", path=f"{path}.file")
        out.append(Include(item["file"], _check_name(item["as"], f"{path}.as")))
    return out


def _scenarios(raw: Any) -> dict[str, dict[str, Any]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ModelParseError("scenarios must be a mapping", path="scenarios")
    out: dict[str, dict[str, Any]] = {}
    for name, overrides in raw.items():
        path = f"scenarios.{name}"
        if not isinstance(name, str):
            raise ModelParseError(f"scenario name must be a string, got {name!r}", path="scenarios")
        if not isinstance(overrides, dict):
            raise ModelParseError("scenario must map scalar names to values", path=path)
        out[name] = {str(k): _literal(v, f"{path}.{k}") for k, v in overrides.items()}
    return out


def _is_section(raw: dict[str, Any]) -> bool:
    # A child holding a list makes the mapping a table
    return bool(raw) and all(_is_scalar_mapping(v) and not _is_column_mapping(v) for v in raw.values())


def parse_document(document: str | dict[str, Any] | None, source: str | None = None) -> Model:
    """Build a :class:`Model` from YAML text or an already-loaded mapping.

    Includes are recorded but not loaded; see :func:`load_model`.

    Raises:
        ModelParseError: The document is malformed, with the offending path.
        ColumnTypeError: A column is empty or mixes value types.
        FormulaParseError: A table formula does not parse.
    """
    if isinstance(document, str):
        try:
            document = yaml.safe_load(document)
        except yaml.YAMLError as exc:
            raise ModelParseError(f"invalid YAML: {exc}") from exc
    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise ModelParseError("top level must be a mapping")

    model = Model(source)
    model.version = document.get("_version")
    for inc in _includes(document.get("includes")):
        model.includes.append(inc)
    model.scenarios = _scenarios(document.get("scenarios"))

    sections: set[str] = set()
    for key, raw in document.items():
        if key in RESERVED_KEYS:
            continue
        name = _check_name(key, str(key))
        if isinstance(raw, dict) and not _is_scalar_mapping(raw):
            if _is_section(raw):
                sections.add(name)
                for child, child_raw in raw.items():
                    _check_name(child, f"{name}.{child}")
                    model.add_scalar(_scalar(f"{name}.{child}", child_raw, f"{name}.{child}"))
            else:
                model.add_table(_table(name, raw))
        else:
            model.add_scalar(_scalar(name, raw, name))

    aliases = [inc.alias for inc in model.includes]
    for alias in aliases:
        if aliases.count(alias) > 1:
            raise ModelParseError(f"duplicate include alias {alias!r}", path="includes")
        if alias in model.tables or alias in model.scalars or alias in sections:
            raise ModelParseError(
                f"include alias {alias!r} shadows a table, scalar or section", path="includes"
            )
    return model


# ---------------------------------------------------------------------------
# Loading with includes
# ---------------------------------------------------------------------------


def _read_file(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def _include_path(base: Path, file: str) -> Path:
    return Path(os.path.normpath(base.parent / file))


def load_model(path: str | Path, reader: Reader | None = None) -> Model:
    """Read *path* and, recursively, every file it includes.

    Each distinct file is parsed once, so a file included from two places
    is shared by both aliases.

    Args:
        path: The root model file.
        reader: Returns the text of a file; defaults to reading from disk.

    Raises:
        ModelError: The root file cannot be read.
        IncludeError: An included file is missing or unreadable.
        IncludeCycleError: Included files include each other.
    """
    from tabcalc.graph import topological_sort

    read = reader or _read_file
    root = Path(os.path.normpath(path))
    models: dict[str, Model] = {}
    edges: dict[str, set[str]] = {}

    pending = [root]
    while pending:
        cur = pending.pop()
        key = str(cur)
        if key in models:
            continue
        try:
            text = read(cur)
        except OSError as exc:
            if cur == root:
                raise ModelError(f"cannot read {key}: {exc}") from exc
            raise IncludeError(key, str(exc)) from exc
        model = parse_document(text, source=key)
        models[key] = model
        edges[key] = set()
        for inc in model.includes:
            child = _include_path(cur, inc.file)
            edges[key].add(str(child))
            pending.append(child)

    topological_sort(
        list(models),
        edges,
        on_cycle=lambda members, cycle: IncludeCycleError(cycle or members),
    )

    for key, model in models.items():
        base = Path(key)
        for inc in model.includes:
            inc.model = models[str(_include_path(base, inc.file))]
            emit_info(
                EventType.include_loaded,
                f"Loaded include {inc.file!r} as {inc.alias!r}",
                {"file": inc.file, "alias": inc.alias, "model": key},
            )
            logger.debug("%s: include %s as %s", key, inc.file, inc.alias)
    return models[str(root)]


# ---------------------------------------------------------------------------
# Dumping
# ---------------------------------------------------------------------------


def _plain(value: Any) -> Any:
    if isinstance(value, datetime.datetime):
        return value.date()
    return value


def _dump_scalar(scalar: Scalar) -> Any:
    if scalar.formula is None and scalar.metadata.is_empty():
        return _plain(scalar.value)
    out: dict[str, Any] = {}
    if scalar.value is not None or scalar.formula is None:
        out["value"] = _plain(scalar.value)
    if scalar.formula is not None:
        out["formula"] = scalar.formula
    out.update(scalar.metadata.as_dict())
    return out


def _dump_entry(body: Any, key: str, meta: Metadata) -> Any:
    if meta.is_empty():
        return body
    return {key: body, **meta.as_dict()}


def dump_document(model: Model) -> dict[str, Any]:
    """Inverse of :func:`parse_document`: a plain mapping for YAML output.

    Formula columns and aggregations are written as their formulas;
    formula scalars keep their last computed value next to the formula.
    Entries with metadata are written in mapping form.
    """
    doc: dict[str, Any] = {}
    if model.version is not None:
        doc["_version"] = model.version
    if model.includes:
        doc["includes"] = [{"file": inc.file, "as": inc.alias} for inc in model.includes]

    for table in model.tables.values():
        entries: dict[str, Any] = {}
        for col in table.columns.values():
            if col.is_formula:
                entries[col.name] = _dump_entry(col.formula, "formula", col.metadata)
            else:
                entries[col.name] = _dump_entry([_plain(v) for v in col.values], "value", col.metadata)
        for agg in table.aggregations.values():
            entries[agg.name] = _dump_entry(agg.formula, "formula", agg.metadata)
        doc[table.name] = entries

    for scalar in model.scalars.values():
        section = scalar.section
        if section is None:
            doc[scalar.name] = _dump_scalar(scalar)
            continue
        child = scalar.name[len(section) + 1:]
        dumped = _dump_scalar(scalar)
        # Section children are always written in mapping form
        if not isinstance(dumped, dict):
            dumped = {"value": dumped}
        doc.setdefault(section, {})[child] = dumped

    if model.scenarios:
        doc["scenarios"] = {name: dict(overrides) for name, overrides in model.scenarios.items()}
    return doc


def dump_model(model: Model) -> str:
    """YAML text for *model*; parsing it back gives an equivalent model."""
    return yaml.safe_dump(dump_document(model), sort_keys=False, default_flow_style=None, allow_unicode=True)
