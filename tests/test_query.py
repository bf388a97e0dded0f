import json
import re
import sqlite3
from urllib.parse import parse_qs, urlsplit

import pytest

from topsqlkit.models import InstanceItem
from topsqlkit.query import DefaultQuery, QueryError
from topsqlkit.store import DefaultStore, PlanMeta, SQLMeta

BASE = 1_000_000
INSTANCE = "127.0.0.1:10080"
INSTANCE_TYPE = "tidb"


def h(text):
    return text.encode().hex()


def series(sql, plan, values, step=10):
    return {
        "metric": {
            "instance": INSTANCE,
            "instance_type": INSTANCE_TYPE,
            "sql_digest": sql,
            "plan_digest": plan,
        },
        "values": [[float(BASE + i * step), str(v)] for i, v in enumerate(values)],
    }


class FakeTSDB:
    """Answers canned range and instant queries and records every request."""

    def __init__(self, matrix=None, vectors=None, instances=None, status=200, body=None):
        self.matrix = matrix or {}
        self.vectors = vectors or {}
        self.instance_list = instances or []
        self.status = status
        self.body = body
        self.requests = []

    def __call__(self, method, target, body):
        parts = urlsplit(target)
        params = {k: v[0] for k, v in parse_qs(parts.query).items()}
        self.requests.append((method, parts.path, params))
        if self.status != 200 or self.body is not None:
            return self.status, self.body or b""
        name = re.match(r"\w+\((\w+)[{\[]", params["query"]).group(1)
        if parts.path == "/api/v1/query_range":
            result = self.matrix.get(name, [])
        elif name == "instance":
            result = [{"metric": m, "value": [0, "1"]} for m in self.instance_list]
        else:
            result = [
                {"metric": {"sql_digest": s, "plan_digest": p}, "value": [float(params["time"]), str(v)]}
                for (s, p), v in self.vectors.get(name, {}).items()
            ]
        return 200, json.dumps({"status": "success", "data": {"result": result}}).encode()


@pytest.fixture
def db():
    conn = sqlite3.connect(":memory:")
    yield conn
    conn.close()


CPU = {
    (h("sql-0"), ""): [85, 64, 43, 19, 31],
    (h("sql-0"), h("plan-0")): [67, 19, 54, 53, 71],
    (h("sql-1"), h("plan-0")): [97, 46, 29, 22, 35],
    (h("sql-2"), h("plan-0")): [61, 87, 37, 55, 53],
}
EXEC = {
    (h("sql-0"), ""): 278,
    (h("sql-0"), h("plan-0")): 304,
    (h("sql-1"), h("plan-0")): 323,
    (h("sql-2"), h("plan-0")): 285,
}
DURATION_MS = {
    (h("sql-0"), ""): 215,
    (h("sql-0"), h("plan-0")): 335,
    (h("sql-1"), h("plan-0")): 291,
    (h("sql-2"), h("plan-0")): 259,
}


def tidb_tsdb():
    return FakeTSDB(
        matrix={"cpu_time": [series(s, p, v) for (s, p), v in CPU.items()]},
        vectors={
            "sql_exec_count": dict(EXEC),
            "sql_duration_count": dict(EXEC),
            "sql_duration_sum": {k: v * 1_000_000 for k, v in DURATION_MS.items()},
        },
    )


def test_records_start_after_end_is_empty(db):
    tsdb = tidb_tsdb()
    dq = DefaultQuery(tsdb, db)
    assert dq.records("cpu_time", BASE + 10, BASE, 10, 5, INSTANCE, INSTANCE_TYPE) == []
    assert tsdb.requests == []


def test_missing_handler_raises(db):
    dq = DefaultQuery(None, db)
    with pytest.raises(QueryError, match="empty query handler"):
        dq.records("cpu_time", BASE, BASE + 40, 10, 5, INSTANCE, INSTANCE_TYPE)


def test_error_status_raises_with_body(db):
    dq = DefaultQuery(FakeTSDB(status=503, body=b"storage unavailable"), db)
    with pytest.raises(QueryError, match="storage unavailable"):
        dq.instances(BASE, BASE + 10)


def test_invalid_json_raises(db):
    dq = DefaultQuery(FakeTSDB(body=b"not json"), db)
    with pytest.raises(QueryError):
        dq.summary(BASE, BASE + 40, 10, 5, INSTANCE, INSTANCE_TYPE)


def test_records_request_is_aligned_to_end(db):
    tsdb = tidb_tsdb()
    DefaultQuery(tsdb, db).records("cpu_time", BASE + 5, BASE + 40, 10, 5, INSTANCE, INSTANCE_TYPE)
    method, path, params = tsdb.requests[0]
    assert (method, path) == ("GET", "/api/v1/query_range")
    assert params == {
        "query": 'sum_over_time(cpu_time{instance="127.0.0.1:10080", instance_type="tidb"}[10])',
        "start": str(BASE + 10),
        "end": str(BASE + 40),
        "step": "10",
        "nocache": "1",
    }


def test_records_fill_text_from_metadata(db):
    store = DefaultStore(lambda method, path, body: (204, b""), db)
    store.sql_meta(SQLMeta(b"sql-0", "select * from t where a = ?"))
    store.plan_meta(PlanMeta(b"plan-0", "Point_Get"))
    tsdb = FakeTSDB(matrix={"cpu_time": [series(h("sql-0"), h("plan-0"), [3, 4])]})

    items = DefaultQuery(tsdb, db).records("cpu_time", BASE, BASE + 10, 10, 5, INSTANCE, INSTANCE_TYPE)

    assert len(items) == 1
    item = items[0]
    assert item.sql_digest == h("sql-0")
    assert item.sql_text == "select * from t where a = ?"
    assert item.is_other is False
    assert len(item.plans) == 1
    assert item.plans[0].plan_text == "Point_Get"
    assert item.plans[0].timestamp_sec == [BASE, BASE + 10]
    assert item.plans[0].cpu_time_ms == [3, 4]


def test_records_without_metadata_tables(db):
    tsdb = FakeTSDB(matrix={"read_row": [series(h("sql-9"), h("plan-9"), [7])]})
    items = DefaultQuery(tsdb, db).records("read_row", BASE, BASE, 10, 5, INSTANCE, INSTANCE_TYPE)
    assert items[0].sql_text == ""
    assert items[0].plans[0].plan_text == ""
    assert items[0].plans[0].read_rows == [7]
    assert items[0].plans[0].cpu_time_ms == []


def test_records_top_one_merges_others(db):
    items = DefaultQuery(tidb_tsdb(), db).records("cpu_time", BASE, BASE + 40, 10, 1, INSTANCE, INSTANCE_TYPE)
    assert [i.sql_digest for i in items] == [h("sql-0"), ""]
    others = items[1]
    assert others.is_other is True
    assert len(others.plans) == 1
    assert others.plans[0].cpu_time_ms == [158, 133, 66, 77, 88]


def test_summary_normal_case(db):
    res = DefaultQuery(tidb_tsdb(), db).summary(BASE, BASE + 40, 10, 5, INSTANCE, INSTANCE_TYPE)
    res.sort(key=lambda i: bytes.fromhex(i.sql_digest))
    assert [i.sql_digest for i in res] == [h("sql-0"), h("sql-1"), h("sql-2")]

    sql0 = res[0]
    assert sql0.cpu_time_ms == 242 + 264
    assert sql0.exec_count_per_sec == pytest.approx(582 / 41)
    assert sql0.duration_per_exec_ms == pytest.approx(550 / 582)
    assert sql0.scan_records_per_sec == 0.0
    plans = sorted(sql0.plans, key=lambda p: p.plan_digest)
    assert plans[0].plan_digest == ""
    assert plans[0].cpu_time_ms == [85, 64, 43, 19, 31]
    assert plans[0].timestamp_sec == [BASE, BASE + 10, BASE + 20, BASE + 30, BASE + 40]
    assert plans[0].exec_count_per_sec == pytest.approx(278 / 41)
    assert plans[0].duration_per_exec_ms == pytest.approx(215 / 278)
    assert plans[1].exec_count_per_sec == pytest.approx(304 / 41)
    assert plans[1].duration_per_exec_ms == pytest.approx(335 / 304)

    assert res[1].cpu_time_ms == 229
    assert res[1].exec_count_per_sec == pytest.approx(323 / 41)
    assert res[2].duration_per_exec_ms == pytest.approx(259 / 285)


def test_summary_top_one(db):
    res = DefaultQuery(tidb_tsdb(), db).summary(BASE, BASE + 40, 10, 1, INSTANCE, INSTANCE_TYPE)
    assert [i.is_other for i in res] == [False, True]
    others = res[1]
    assert others.cpu_time_ms == 229 + 293
    assert others.exec_count_per_sec == pytest.approx(608 / 41)
    assert others.duration_per_exec_ms == pytest.approx(550 / 608)
    assert len(others.plans) == 1
    plan = others.plans[0]
    assert plan.cpu_time_ms == [158, 133, 66, 77, 88]
    assert plan.exec_count_per_sec == pytest.approx(others.exec_count_per_sec)
    assert plan.duration_per_exec_ms == pytest.approx(others.duration_per_exec_ms)


def test_summary_scan_rates(db):
    tsdb = FakeTSDB(
        matrix={"cpu_time": [series(h("sql-0"), h("plan-0"), [10, 20])]},
        vectors={
            "read_row": {(h("sql-0"), h("plan-0")): 97},
            "read_index": {(h("sql-0"), h("plan-0")): 80},
        },
    )
    res = DefaultQuery(tsdb, db).summary(BASE, BASE + 19, 10, 5, "127.0.0.1:20180", "tikv")
    assert res[0].cpu_time_ms == 30
    assert res[0].scan_records_per_sec == pytest.approx(97 / 20)
    assert res[0].scan_indexes_per_sec == pytest.approx(80 / 20)
    assert res[0].duration_per_exec_ms == 0.0
    assert res[0].plans[0].scan_records_per_sec == pytest.approx(97 / 20)


def test_summary_sum_queries_use_unaligned_range(db):
    tsdb = tidb_tsdb()
    DefaultQuery(tsdb, db).summary(BASE + 5, BASE + 40, 10, 5, INSTANCE, INSTANCE_TYPE)
    assert tsdb.requests[0][2]["start"] == str(BASE + 10)
    names = [re.match(r"\w+\((\w+)", p["query"]).group(1) for _, path, p in tsdb.requests[1:]]
    assert names == ["sql_duration_sum", "sql_duration_count", "sql_exec_count", "read_row", "read_index"]
    _, path, params = tsdb.requests[1]
    assert path == "/api/v1/query"
    assert params["query"].endswith("[36s])")
    assert params["time"] == str(BASE + 40)


def test_summary_no_data(db):
    tsdb = FakeTSDB()
    assert DefaultQuery(tsdb, db).summary(BASE + 41, BASE + 100, 10, 5, INSTANCE, INSTANCE_TYPE) == []
    assert len(tsdb.requests) == 1


def test_instances(db):
    tsdb = FakeTSDB(
        instances=[
            {"instance": "127.0.0.1:10080", "instance_type": "tidb"},
            {"instance": "127.0.0.1:20160", "instance_type": "tikv"},
        ]
    )
    res = DefaultQuery(tsdb, db).instances(BASE - 10, BASE)
    assert res == [
        InstanceItem(instance="127.0.0.1:10080", instance_type="tidb"),
        InstanceItem(instance="127.0.0.1:20160", instance_type="tikv"),
    ]
    _, path, params = tsdb.requests[0]
    assert path == "/api/v1/query"
    assert params == {"query": "last_over_time(instance[11s])", "time": str(BASE), "nocache": "1"}


def test_instances_start_after_end(db):
    tsdb = FakeTSDB()
    assert DefaultQuery(tsdb, db).instances(BASE + 1, BASE) == []
    assert tsdb.requests == []