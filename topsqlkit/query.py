"""Top SQL queries over the time series database and the SQL/plan metadata store."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Iterable, Iterator
from urllib.parse import urlencode

from topsqlkit.models import (
    InstanceItem,
    RecordItem,
    RecordKey,
    RecordPlanItem,
    SummaryItem,
    SummaryPlanItem,
)
from topsqlkit.store import (
    METRIC_NAME_CPU_TIME,
    METRIC_NAME_READ_INDEX,
    METRIC_NAME_READ_ROW,
    METRIC_NAME_SQL_DURATION_COUNT,
    METRIC_NAME_SQL_DURATION_SUM,
    METRIC_NAME_SQL_EXEC_COUNT,
    METRIC_NAME_WRITE_INDEX,
    METRIC_NAME_WRITE_ROW,
)
from topsqlkit.topk import SQLGroup, top_k

log = logging.getLogger(__name__)

QUERY_RANGE_PATH = "/api/v1/query_range"
QUERY_PATH = "/api/v1/query"

# (method, path with query string, body) -> (status code, response body)
SelectHandler = Callable[[str, str, bytes], "tuple[int, bytes]"]

_SERIES_FIELD = {
    METRIC_NAME_CPU_TIME: "cpu_time_ms",
    METRIC_NAME_READ_ROW: "read_rows",
    METRIC_NAME_READ_INDEX: "read_indexes",
    METRIC_NAME_WRITE_ROW: "write_rows",
    METRIC_NAME_WRITE_INDEX: "write_indexes",
    METRIC_NAME_SQL_EXEC_COUNT: "sql_exec_count",
    METRIC_NAME_SQL_DURATION_SUM: "sql_duration_sum",
    METRIC_NAME_SQL_DURATION_COUNT: "sql_duration_count",
}


class QueryError(Exception):
    """Raised when the time series database cannot answer a query."""


def _align_start(start_secs: int, end_secs: int, window_secs: int) -> int:
    if window_secs == 0:
        raise ValueError("window must not be zero")
    span = end_secs - start_secs
    return end_secs - int(span / window_secs) * window_secs


def _per_exec_ms(duration_ns: float, count: float) -> float:
    return 0.0 if count == 0.0 else duration_ns / 1_000_000.0 / count


def _results(response: dict) -> list:
    data = response.get("data") or {}
    return data.get("result") or []


class DefaultQuery:
    """Answers Top SQL record, summary and instance queries."""

    def __init__(self, vmselect_handler: SelectHandler | None, document_db: sqlite3.Connection) -> None:
        self._handler = vmselect_handler
        self._db = document_db
        self._closed = False

    def __enter__(self) -> DefaultQuery:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def records(
        self,
        name: str,
        start_secs: int,
        end_secs: int,
        window_secs: int,
        top: int,
        instance: str,
        instance_type: str,
    ) -> list[RecordItem]:
        """Top ``top`` SQL statements for one metric, series aligned to ``end_secs``."""
        if start_secs > end_secs:
            return []
        start_secs = _align_start(start_secs, end_secs, window_secs)
        results = self._fetch_records(name, start_secs, end_secs, window_secs, instance, instance_type)
        if not results:
            return []
        return list(self._fill_text(name, top_k(results, top)))

    def summary(
        self,
        start_secs: int,
        end_secs: int,
        window_secs: int,
        top: int,
        instance: str,
        instance_type: str,
    ) -> list[SummaryItem]:
        """Top ``top`` SQL statements by CPU time with execution and scan rates."""
        if start_secs > end_secs:
            return []
        aligned_start = _align_start(start_secs, end_secs, window_secs)
        results = self._fetch_records(
            METRIC_NAME_CPU_TIME, aligned_start, end_secs, window_secs, instance, instance_type
        )
        if not results:
            return []

        items: list[SummaryItem] = []
        for record in self._fill_text(METRIC_NAME_CPU_TIME, top_k(results, top)):
            item = SummaryItem(sql_digest=record.sql_digest, sql_text=record.sql_text, is_other=record.is_other)
            for plan in record.plans:
                item.plans.append(
                    SummaryPlanItem(
                        plan_digest=plan.plan_digest,
                        plan_text=plan.plan_text,
                        timestamp_sec=plan.timestamp_sec,
                        cpu_time_ms=plan.cpu_time_ms,
                    )
                )
                item.cpu_time_ms += sum(plan.cpu_time_ms)
            items.append(item)

        range_secs = float(end_secs - start_secs + 1)

        def fetch(metric: str) -> dict[RecordKey, float]:
            return self._fetch_sum(metric, start_secs, end_secs, instance, instance_type)

        durations = fetch(METRIC_NAME_SQL_DURATION_SUM)
        duration_counts = fetch(METRIC_NAME_SQL_DURATION_COUNT)
        exec_counts = fetch(METRIC_NAME_SQL_EXEC_COUNT)
        read_rows = fetch(METRIC_NAME_READ_ROW)
        read_indexes = fetch(METRIC_NAME_READ_INDEX)

        others: SummaryItem | None = None
        for item in items:
            if item.is_other:
                if not item.plans:
                    item.plans.append(SummaryPlanItem())
                others = item
                continue

            total_ns = total_count = total_exec = total_rows = total_indexes = 0.0
            for plan in item.plans:
                key = RecordKey(sql_digest=item.sql_digest, plan_digest=plan.plan_digest)
                duration_ns = durations.pop(key, 0.0)
                duration_count = duration_counts.pop(key, 0.0)
                exec_count = exec_counts.pop(key, 0.0)
                rows = read_rows.pop(key, 0.0)
                indexes = read_indexes.pop(key, 0.0)

                plan.duration_per_exec_ms = _per_exec_ms(duration_ns, duration_count)
                plan.exec_count_per_sec = exec_count / range_secs
                plan.scan_records_per_sec = rows / range_secs
                plan.scan_indexes_per_sec = indexes / range_secs

                total_ns += duration_ns
                total_count += duration_count
                total_exec += exec_count
                total_rows += rows
                total_indexes += indexes

            item.duration_per_exec_ms = _per_exec_ms(total_ns, total_count)
            item.exec_count_per_sec = total_exec / range_secs
            item.scan_records_per_sec = total_rows / range_secs
            item.scan_indexes_per_sec = total_indexes / range_secs

        if others is not None:
            plan = others.plans[0]
            others.duration_per_exec_ms = _per_exec_ms(sum(durations.values()), sum(duration_counts.values()))
            others.exec_count_per_sec = sum(exec_counts.values()) / range_secs
            others.scan_records_per_sec = sum(read_rows.values()) / range_secs
            others.scan_indexes_per_sec = sum(read_indexes.values()) / range_secs
            plan.duration_per_exec_ms = others.duration_per_exec_ms
            plan.exec_count_per_sec = others.exec_count_per_sec
            plan.scan_records_per_sec = others.scan_records_per_sec
            plan.scan_indexes_per_sec = others.scan_indexes_per_sec

        return items

    def instances(self, start_secs: int, end_secs: int) -> list[InstanceItem]:
        """Instances that reported at some point within [start_secs, end_secs]."""
        if start_secs > end_secs:
            return []
        # Lookbehind evaluation at end_secs with a window covering start_secs..end_secs.
        response = self._get(
            QUERY_PATH,
            {
                "query": f"last_over_time(instance[{end_secs - start_secs + 1}s])",
                "time": str(end_secs),
                "nocache": "1",
            },
        )
        items = []
        for result in _results(response):
            metric = result.get("metric") or {}
            items.append(
                InstanceItem(instance=metric.get("instance", ""), instance_type=metric.get("instance_type", ""))
            )
        return items

    def close(self) -> None:
        """Mark the query closed; the handler and database stay with the caller."""
        if not self._closed:
            self._closed = True
            log.debug("top sql query closed")

    def _get(self, path: str, params: dict[str, str]) -> dict:
        if self._closed:
            raise QueryError("query is closed")
        if self._handler is None:
            raise QueryError("empty query handler")
        target = f"{path}?{urlencode(sorted(params.items()))}"
        status, body = self._handler("GET", target, b"")
        if not 200 <= status < 300:
            message = body.decode("utf-8", "replace")
            log.warning("failed to fetch timeseries db: %s", message)
            raise QueryError(message)
        try:
            response = json.loads(body)
        except ValueError as exc:
            raise QueryError(f"invalid response from timeseries db: {exc}") from exc
        if not isinstance(response, dict):
            raise QueryError("invalid response from timeseries db: not an object")
        return response

    def _fetch_records(
        self,
        name: str,
        start_secs: int,
        end_secs: int,
        window_secs: int,
        instance: str,
        instance_type: str,
    ) -> list:
        response = self._get(
            QUERY_RANGE_PATH,
            {
                "query": (
                    f'sum_over_time({name}{{instance="{instance}", '
                    f'instance_type="{instance_type}"}}[{window_secs}])'
                ),
                "start": str(start_secs),
                "end": str(end_secs),
                "step": str(window_secs),
                "nocache": "1",
            },
        )
        return _results(response)

    def _fetch_sum(
        self,
        name: str,
        start_secs: int,
        end_secs: int,
        instance: str,
        instance_type: str,
    ) -> dict[RecordKey, float]:
        # Lookbehind evaluation at end_secs summing every point in start_secs..end_secs.
        response = self._get(
            QUERY_PATH,
            {
                "query": (
                    f'sum_over_time({name}{{instance="{instance}", '
                    f'instance_type="{instance_type}"}}[{end_secs - start_secs + 1}s])'
                ),
                "time": str(end_secs),
                "nocache": "1",
            },
        )
        sums: dict[RecordKey, float] = {}
        for result in _results(response):
            value = result.get("value") or []
            if len(value) < 2 or not isinstance(value[1], str):
                continue
            try:
                total = float(value[1])
            except ValueError:
                continue
            metric = result.get("metric") or {}
            key = RecordKey(sql_digest=metric.get("sql_digest", ""), plan_digest=metric.get("plan_digest", ""))
            sums[key] = total
        return sums

    def _lookup(self, sql: str, digest: str) -> tuple | None:
        try:
            return self._db.execute(sql, (digest,)).fetchone()
        except sqlite3.Error:
            return None

    def _fill_text(self, name: str, groups: Iterable[SQLGroup]) -> Iterator[RecordItem]:
        series_field = _SERIES_FIELD.get(name)
        for group in groups:
            sql_text = ""
            if group.sql_digest:
                row = self._lookup("SELECT sql_text FROM sql_digest WHERE digest = ?", group.sql_digest)
                if row is not None and row[0]:
                    sql_text = row[0]

            item = RecordItem(sql_digest=group.sql_digest, sql_text=sql_text, is_other=not group.sql_digest)
            for series in group.plan_series:
                plan_text = ""
                encoded_plan = ""
                if series.plan_digest:
                    row = self._lookup(
                        "SELECT plan_text, encoded_plan FROM plan_digest WHERE digest = ?", series.plan_digest
                    )
                    if row is not None:
                        plan_text = row[0] or ""
                        encoded_plan = row[1] or ""

                plan_item = RecordPlanItem(
                    plan_digest=series.plan_digest,
                    plan_text=plan_text,
                    timestamp_sec=list(series.timestamp_secs),
                )
                if not plan_text and encoded_plan:
                    log.warning("failed to decode plan: encoded plans are not supported (%s)", encoded_plan)
                if series_field is not None:
                    setattr(plan_item, series_field, list(series.values))
                item.plans.append(plan_item)
            yield item