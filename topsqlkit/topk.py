"""Grouping of range query results by SQL digest and top-K selection with an 'others' bucket."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

_UINT64_MASK = 0xFFFF_FFFF_FFFF_FFFF


@dataclass
class PlanSeries:
    """Timestamps and values of one plan digest."""

    plan_digest: str = ""
    timestamp_secs: list[int] = field(default_factory=list)
    values: list[int] = field(default_factory=list)


@dataclass
class SQLGroup:
    """All plan series of one SQL digest and the sum of their values."""

    sql_digest: str = ""
    plan_series: list[PlanSeries] = field(default_factory=list)
    value_sum: int = 0


def _parse_uint(text: object) -> int | None:
    if not isinstance(text, str):
        raise TypeError(f"sample value must be a string, got {type(text).__name__}")
    if not text or not text.isascii() or not text.isdigit():
        return None
    value = int(text)
    return value if value <= _UINT64_MASK else None


def _parse_timestamp(raw: object) -> int:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise TypeError(f"sample timestamp must be a number, got {type(raw).__name__}")
    return int(raw)


def group_by_sql_digest(results: Iterable[dict]) -> tuple[list[SQLGroup], SQLGroup]:
    """Group range query results by SQL digest.

    Returns the groups with a non-empty digest and, separately, the group of the
    empty digest, which holds points evicted as 'others' during collection.
    """
    groups: dict[str, SQLGroup] = {}
    for result in results:
        metric = result.get("metric") or {}
        sql_digest = metric.get("sql_digest", "")
        plan_digest = metric.get("plan_digest", "")

        group = groups.setdefault(sql_digest, SQLGroup(sql_digest=sql_digest))
        series = next((s for s in group.plan_series if s.plan_digest == plan_digest), None)
        if series is None:
            series = PlanSeries(plan_digest=plan_digest)
            group.plan_series.append(series)

        for sample in result.get("values") or []:
            if len(sample) != 2:
                continue
            ts = _parse_timestamp(sample[0])
            value = _parse_uint(sample[1])
            if value is None:
                continue
            group.value_sum = (group.value_sum + value) & _UINT64_MASK
            series.timestamp_secs.append(ts)
            series.values.append(value)

    others = groups.pop("", SQLGroup())
    return list(groups.values()), others


def keep_top_k(groups: Sequence[SQLGroup], top: int) -> tuple[list[SQLGroup], list[SQLGroup]]:
    """Split groups into the top ``top`` by value sum and the rest.

    Ties are broken by the larger SQL digest. With ``top <= 0`` or no more groups
    than ``top``, everything is kept.
    """
    groups = list(groups)
    if top <= 0 or len(groups) <= top:
        return groups, []
    ranked = sorted(groups, key=lambda g: (g.value_sum, g.sql_digest), reverse=True)
    return ranked[:top], ranked[top:]


def merge_others(original_others: SQLGroup, query_others: Sequence[SQLGroup]) -> SQLGroup:
    """Fold evicted groups into the 'others' group, summing values at equal timestamps."""
    if not query_others:
        return original_others

    totals: dict[int, int] = {}

    def add(series: Iterable[PlanSeries]) -> None:
        for ps in series:
            for ts, value in zip(ps.timestamp_secs, ps.values):
                totals[ts] = (totals.get(ts, 0) + value) & _UINT64_MASK

    add(original_others.plan_series)
    for group in query_others:
        add(group.plan_series)

    timestamps = sorted(totals)
    merged = PlanSeries(timestamp_secs=timestamps, values=[totals[ts] for ts in timestamps])
    return SQLGroup(plan_series=[merged])


def top_k(results: Iterable[dict], top: int) -> list[SQLGroup]:
    """Group results, keep the top ``top`` SQL digests and append the merged 'others' group."""
    groups, original_others = group_by_sql_digest(results)
    kept, evicted = keep_top_k(groups, top)
    others = merge_others(original_others, evicted)
    if others.plan_series:
        kept.append(others)
    return kept