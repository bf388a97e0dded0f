"""Conversion of Top SQL records into time series and persistence of SQL/plan metadata."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from topsqlkit.tag import TagLabel, decode_tag

log = logging.getLogger(__name__)

METRIC_NAME_INSTANCE = "instance"
METRIC_NAME_CPU_TIME = "cpu_time"
METRIC_NAME_READ_ROW = "read_row"
METRIC_NAME_READ_INDEX = "read_index"
METRIC_NAME_WRITE_ROW = "write_row"
METRIC_NAME_WRITE_INDEX = "write_index"
METRIC_NAME_SQL_EXEC_COUNT = "sql_exec_count"
METRIC_NAME_SQL_DURATION_SUM = "sql_duration_sum"
METRIC_NAME_SQL_DURATION_COUNT = "sql_duration_count"

COMPONENT_TIDB = "tidb"
COMPONENT_TIKV = "tikv"

IMPORT_PATH = "/api/v1/import"

# (method, path, body) -> (status code, response body)
InsertHandler = Callable[[str, str, bytes], "tuple[int, bytes]"]

_CREATE_TABLES = (
    "CREATE TABLE IF NOT EXISTS sql_digest "
    "(digest VARCHAR(255) PRIMARY KEY, sql_text TEXT, is_internal BOOLEAN)",
    "CREATE TABLE IF NOT EXISTS plan_digest "
    "(digest VARCHAR(255) PRIMARY KEY, plan_text TEXT, encoded_plan TEXT)",
)


@dataclass
class Metric:
    """One time series: its tags, timestamps in milliseconds and values."""

    metric: dict[str, str]
    timestamps: list[int] = field(default_factory=list)
    values: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"metric": dict(self.metric), "timestamps": list(self.timestamps), "values": list(self.values)}

    def append(self, timestamp_ms: int, value: int) -> None:
        self.timestamps.append(timestamp_ms)
        self.values.append(value)


@dataclass
class InstanceItem:
    """An instance seen in the topology at a given second."""

    instance: str
    instance_type: str
    timestamp_sec: int


@dataclass
class TopSQLRecordItem:
    timestamp_sec: int
    cpu_time_ms: int = 0
    stmt_exec_count: int = 0
    stmt_duration_sum_ns: int = 0
    stmt_duration_count: int = 0
    stmt_kv_exec_count: dict[str, int] = field(default_factory=dict)


@dataclass
class TopSQLRecord:
    sql_digest: bytes
    plan_digest: bytes
    items: list[TopSQLRecordItem] = field(default_factory=list)


@dataclass
class SQLMeta:
    sql_digest: bytes
    normalized_sql: str
    is_internal_sql: bool = False


@dataclass
class PlanMeta:
    plan_digest: bytes
    normalized_plan: str
    encoded_normalized_plan: str = ""


@dataclass
class GroupTagRecordItem:
    timestamp_sec: int
    cpu_time_ms: int = 0
    read_keys: int = 0
    write_keys: int = 0


@dataclass
class ResourceUsageRecord:
    resource_group_tag: bytes
    items: list[GroupTagRecordItem] = field(default_factory=list)


def _record_tags(name: str, instance: str, instance_type: str, sql_digest: str, plan_digest: str) -> dict[str, str]:
    return {
        "__name__": name,
        "instance": instance,
        "instance_type": instance_type,
        "sql_digest": sql_digest,
        "plan_digest": plan_digest,
    }


def instances_to_metrics(items: Iterable[InstanceItem]) -> list[Metric]:
    """Turn each instance item into a single-point series with value 1."""
    return [
        Metric(
            metric={
                "__name__": METRIC_NAME_INSTANCE,
                "instance": item.instance,
                "instance_type": item.instance_type,
            },
            timestamps=[item.timestamp_sec * 1000],
            values=[1],
        )
        for item in items
    ]


def top_sql_record_to_metrics(instance: str, instance_type: str, record: TopSQLRecord) -> list[Metric]:
    """Split a TiDB Top SQL record into cpu, exec, duration and per-TiKV exec series."""
    sql_digest = record.sql_digest.hex()
    plan_digest = record.plan_digest.hex()

    def series(name: str) -> Metric:
        return Metric(_record_tags(name, instance, instance_type, sql_digest, plan_digest))

    cpu = series(METRIC_NAME_CPU_TIME)
    exec_count = series(METRIC_NAME_SQL_EXEC_COUNT)
    duration_sum = series(METRIC_NAME_SQL_DURATION_SUM)
    duration_count = series(METRIC_NAME_SQL_DURATION_COUNT)
    kv_exec: dict[str, Metric] = {}

    for item in record.items:
        ts_ms = item.timestamp_sec * 1000
        cpu.append(ts_ms, item.cpu_time_ms)
        exec_count.append(ts_ms, item.stmt_exec_count)
        duration_sum.append(ts_ms, item.stmt_duration_sum_ns)
        duration_count.append(ts_ms, item.stmt_duration_count)
        for target, count in item.stmt_kv_exec_count.items():
            metric = kv_exec.get(target)
            if metric is None:
                metric = Metric(
                    _record_tags(METRIC_NAME_SQL_EXEC_COUNT, target, COMPONENT_TIKV, sql_digest, plan_digest)
                )
                kv_exec[target] = metric
            metric.append(ts_ms, count)

    return [cpu, exec_count, duration_sum, duration_count, *kv_exec.values()]


def resource_metering_to_metrics(instance: str, instance_type: str, record: ResourceUsageRecord) -> list[Metric]:
    """Split a TiKV resource usage record into cpu and row/index read/write series.

    Raises TagDecodeError when the record's resource group tag is malformed.
    """
    tag = decode_tag(record.resource_group_tag)
    sql_digest = tag.sql_digest.hex()
    plan_digest = tag.plan_digest.hex()

    def series(name: str) -> Metric:
        return Metric(_record_tags(name, instance, instance_type, sql_digest, plan_digest))

    cpu = series(METRIC_NAME_CPU_TIME)
    read_row = series(METRIC_NAME_READ_ROW)
    read_index = series(METRIC_NAME_READ_INDEX)
    write_row = series(METRIC_NAME_WRITE_ROW)
    write_index = series(METRIC_NAME_WRITE_INDEX)

    def split(value: int) -> tuple[int, int]:
        if tag.label is TagLabel.ROW:
            return value, 0
        if tag.label is TagLabel.INDEX:
            return 0, value
        return 0, 0

    for item in record.items:
        ts_ms = item.timestamp_sec * 1000
        cpu.append(ts_ms, item.cpu_time_ms)
        rows, indexes = split(item.read_keys)
        read_row.append(ts_ms, rows)
        read_index.append(ts_ms, indexes)
        rows, indexes = split(item.write_keys)
        write_row.append(ts_ms, rows)
        write_index.append(ts_ms, indexes)

    return [cpu, read_row, read_index, write_row, write_index]


def _json_line(obj: dict) -> str:
    text = json.dumps(obj, separators=(",", ":"), ensure_ascii=False)
    return (
        text.replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


def encode_metrics(metrics: Iterable[Metric]) -> bytes:
    """Encode metrics as newline-delimited JSON, the time series import format."""
    return "".join(_json_line(m.to_dict()) + "\n" for m in metrics).encode("utf-8")


class DefaultStore:
    """Writes series through a time series import handler and metadata into SQLite."""

    def __init__(self, insert_handler: InsertHandler, document_db: sqlite3.Connection) -> None:
        self._insert = insert_handler
        self._db = document_db
        self._closed = False
        with self._db:
            for stmt in _CREATE_TABLES:
                self._db.execute(stmt)

    def __enter__(self) -> DefaultStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def instances(self, items: Iterable[InstanceItem]) -> None:
        self._write_timeseries(instances_to_metrics(items))

    def top_sql_record(self, instance: str, instance_type: str, record: TopSQLRecord) -> None:
        self._write_timeseries(top_sql_record_to_metrics(instance, instance_type, record))

    def resource_metering_record(self, instance: str, instance_type: str, record: ResourceUsageRecord) -> None:
        self._write_timeseries(resource_metering_to_metrics(instance, instance_type, record))

    def sql_meta(self, meta: SQLMeta) -> None:
        self._check_open()
        with self._db:
            self._db.execute(
                "INSERT OR REPLACE INTO sql_digest(digest, sql_text, is_internal) VALUES (?, ?, ?)",
                (meta.sql_digest.hex(), meta.normalized_sql, bool(meta.is_internal_sql)),
            )

    def plan_meta(self, meta: PlanMeta) -> None:
        self._check_open()
        with self._db:
            self._db.execute(
                "INSERT OR REPLACE INTO plan_digest(digest, plan_text, encoded_plan) VALUES (?, ?, ?)",
                (meta.plan_digest.hex(), meta.normalized_plan, meta.encoded_normalized_plan),
            )

    def close(self) -> None:
        """Mark the store closed; the handler and database stay with the caller."""
        if not self._closed:
            self._closed = True
            log.debug("top sql store closed")

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("store is closed")

    def _write_timeseries(self, metrics: list[Metric]) -> None:
        self._check_open()
        if not metrics:
            return
        status, body = self._insert("POST", IMPORT_PATH, encode_metrics(metrics))
        if not 200 <= status < 300:
            log.warning("failed to write timeseries db: %s", body.decode("utf-8", "replace"))