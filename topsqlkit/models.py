"""Result records returned by Top SQL queries and their JSON shapes."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class RecordKey:
    """Identifies one (SQL digest, plan digest) series."""

    sql_digest: str = ""
    plan_digest: str = ""


_RECORD_SERIES_FIELDS = (
    "cpu_time_ms",
    "read_rows",
    "read_indexes",
    "write_rows",
    "write_indexes",
    "sql_exec_count",
    "sql_duration_sum",
    "sql_duration_count",
)


@dataclass
class RecordPlanItem:
    """Time series of one plan of a SQL statement for a single metric."""

    plan_digest: str = ""
    plan_text: str = ""
    timestamp_sec: list[int] = field(default_factory=list)
    cpu_time_ms: list[int] = field(default_factory=list)
    read_rows: list[int] = field(default_factory=list)
    read_indexes: list[int] = field(default_factory=list)
    write_rows: list[int] = field(default_factory=list)
    write_indexes: list[int] = field(default_factory=list)
    sql_exec_count: list[int] = field(default_factory=list)
    sql_duration_sum: list[int] = field(default_factory=list)
    sql_duration_count: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        """JSON form; empty metric series are left out."""
        out: dict = {
            "plan_digest": self.plan_digest,
            "plan_text": self.plan_text,
            "timestamp_sec": list(self.timestamp_sec),
        }
        for name in _RECORD_SERIES_FIELDS:
            values = getattr(self, name)
            if values:
                out[name] = list(values)
        return out


@dataclass
class RecordItem:
    """One SQL statement and the series of each of its plans."""

    sql_digest: str = ""
    sql_text: str = ""
    is_other: bool = False
    plans: list[RecordPlanItem] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "sql_digest": self.sql_digest,
            "sql_text": self.sql_text,
            "is_other": self.is_other,
            "plans": [p.to_dict() for p in self.plans],
        }


@dataclass
class SummaryPlanItem:
    """Per-plan summary: CPU series and rates over the queried range."""

    plan_digest: str = ""
    plan_text: str = ""
    timestamp_sec: list[int] = field(default_factory=list)
    cpu_time_ms: list[int] = field(default_factory=list)
    exec_count_per_sec: float = 0.0
    duration_per_exec_ms: float = 0.0
    scan_records_per_sec: float = 0.0
    scan_indexes_per_sec: float = 0.0

    def to_dict(self) -> dict:
        out: dict = {
            "plan_digest": self.plan_digest,
            "plan_text": self.plan_text,
            "timestamp_sec": list(self.timestamp_sec),
        }
        if self.cpu_time_ms:
            out["cpu_time_ms"] = list(self.cpu_time_ms)
        out.update(
            exec_count_per_sec=self.exec_count_per_sec,
            duration_per_exec_ms=self.duration_per_exec_ms,
            scan_records_per_sec=self.scan_records_per_sec,
            scan_indexes_per_sec=self.scan_indexes_per_sec,
        )
        return out


@dataclass
class SummaryItem:
    """Per-statement summary over the queried range."""

    sql_digest: str = ""
    sql_text: str = ""
    is_other: bool = False
    cpu_time_ms: int = 0
    exec_count_per_sec: float = 0.0
    duration_per_exec_ms: float = 0.0
    scan_records_per_sec: float = 0.0
    scan_indexes_per_sec: float = 0.0
    plans: list[SummaryPlanItem] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "sql_digest": self.sql_digest,
            "sql_text": self.sql_text,
            "is_other": self.is_other,
            "cpu_time_ms": self.cpu_time_ms,
            "exec_count_per_sec": self.exec_count_per_sec,
            "duration_per_exec_ms": self.duration_per_exec_ms,
            "scan_records_per_sec": self.scan_records_per_sec,
            "scan_indexes_per_sec": self.scan_indexes_per_sec,
            "plans": [p.to_dict() for p in self.plans],
        }


@dataclass
class InstanceItem:
    """An instance known to have reported data."""

    instance: str = ""
    instance_type: str = ""

    def to_dict(self) -> dict:
        return {"instance": self.instance, "instance_type": self.instance_type}