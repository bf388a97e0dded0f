# topsqlkit

Stores, aggregates and queries Top SQL data: per-statement resource usage
(CPU time, executions, durations, rows and indexes read or written) reported
by the SQL and key-value nodes of a database cluster. It uses only the
standard library.

## Modules

- `topsqlkit.tag` — `ResourceGroupTag` (SQL digest, plan digest, optional
  `TagLabel` `ROW` / `INDEX` / `UNKNOWN`), with `decode_tag` and `encode_tag`
  for its protobuf wire form. Malformed bytes raise `TagDecodeError`.
- `topsqlkit.store` — input records (`TopSQLRecord`, `TopSQLRecordItem`,
  `ResourceUsageRecord`, `GroupTagRecordItem`, `InstanceItem`, `SQLMeta`,
  `PlanMeta`) and their conversion into `Metric` series:
  `instances_to_metrics`, `top_sql_record_to_metrics`,
  `resource_metering_to_metrics`. `encode_metrics` renders series as JSON
  lines. `DefaultStore(insert_handler, document_db)` posts those lines to
  `/api/v1/import` through `insert_handler` and keeps SQL and plan texts in the
  `sql_digest` and `plan_digest` tables of a `sqlite3` connection, which it
  creates if missing. A non-2xx answer from the handler is logged, not raised.
- `topsqlkit.models` — query results: `RecordItem`, `RecordPlanItem`,
  `SummaryItem`, `SummaryPlanItem`, `InstanceItem`, `RecordKey`, each with a
  `to_dict()` JSON form.
- `topsqlkit.topk` — `group_by_sql_digest`, `keep_top_k`, `merge_others` and
  `top_k`: group range-query results by SQL digest into `SQLGroup` /
  `PlanSeries`, keep the K groups with the largest value sum (ties go to the
  larger digest) and fold the rest, together with the empty-digest group, into
  one "others" series summed per timestamp.
- `topsqlkit.query` — `DefaultQuery(vmselect_handler, document_db)` with
  `records(...)`, `summary(...)` and `instances(start_secs, end_secs)`. It sends
  `GET /api/v1/query_range` and `GET /api/v1/query` requests through the
  handler, fills SQL and plan texts from the database, and computes per-second
  execution and scan rates and mean duration per execution. Handler failures
  raise `QueryError`.
- `topsqlkit.service` — `Service(query)`, a WSGI application that also offers
  `handle(path, params)` returning `(status, payload)`:
  - `GET /v1/instances`
  - `GET /v1/summary`
  - `GET /v1/<metric>` for `cpu_time`, `read_row`, `read_index`, `write_row`,
    `write_index`, `sql_exec_count`, `sql_duration_sum`, `sql_duration_count`

  Parameters: `start` and `end` (Unix seconds, default the last two weeks up
  to now), `instance` and `instance_type` (required except for instances),
  `top` (default `-1`, meaning all) and `window` (a duration such as `10s`,
  `1m`, `1h30m`; default `1m`). Bad parameters give 400, query failures 503.
  `parse_duration`, `parse_start_end` and `parse_all_params` are public;
  they raise `ParamError`.
- `topsqlkit.controller` — `Component(name, ip, port, status_port)` and
  `SubscriberController(store)`. `update_variable(enable_top_sql)` switches
  collection on or off; `update_topology(components)` records the topology
  and, while enabled, writes one instance point for each `tidb` (at
  `ip:status_port`) and `tikv` (at `ip:port`) component.

## Handlers

Both handlers are callables `(method, path, body) -> (status_code, body_bytes)`.
The select handler gets the path with its query string and must answer with
Prometheus-style JSON (`{"data": {"result": [...]}}`).

## Example

```python
import json
import sqlite3

from topsqlkit.query import DefaultQuery
from topsqlkit.service import Service


def vmselect_handler(method, path, body):
    return 200, json.dumps({"status": "success", "data": {"result": []}}).encode()


db = sqlite3.connect(":memory:")
app = Service(DefaultQuery(vmselect_handler, db))

status, payload = app.handle("/v1/summary", {
    "instance": "127.0.0.1:10080",
    "instance_type": "tidb",
    "window": "10s",
    "top": "5",
})
# status == 200, payload == {"status": "ok", "data": []}
```

`app` can be served by any WSGI server, e.g. `wsgiref.simple_server`.

## What it does not do

- It does not collect data from cluster nodes: records must be handed to
  `DefaultStore` by the caller.
- It contains no time-series database; storage and queries go through the
  handlers you supply.
- Plans stored only in encoded form are not decoded; their `plan_text` stays
  empty and a warning is logged.
- There is no command-line program or built-in server.

## Tests

```
pip install -e .[test]
pytest
```