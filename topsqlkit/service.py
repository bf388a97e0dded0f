"""HTTP endpoints serving Top SQL instances, per-metric records and summaries."""

from __future__ import annotations

import json
import math
import re
import time
from collections.abc import Callable, Mapping
from functools import partial
from http import HTTPStatus
from urllib.parse import parse_qs

from topsqlkit.query import QueryError
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

METRIC_NAMES = (
    METRIC_NAME_CPU_TIME,
    METRIC_NAME_READ_ROW,
    METRIC_NAME_READ_INDEX,
    METRIC_NAME_WRITE_ROW,
    METRIC_NAME_WRITE_INDEX,
    METRIC_NAME_SQL_EXEC_COUNT,
    METRIC_NAME_SQL_DURATION_SUM,
    METRIC_NAME_SQL_DURATION_COUNT,
)

DEFAULT_TOP = "-1"
DEFAULT_WINDOW = "1m"

_WEEK_SECS = 7 * 24 * 60 * 60
_INT64_MAX = 2**63 - 1
_NANOS_PER_SEC = 1_000_000_000

_UNITS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": _NANOS_PER_SEC,
    "m": 60 * _NANOS_PER_SEC,
    "h": 3600 * _NANOS_PER_SEC,
}

_COMPONENT = re.compile(r"([0-9]*)(?:\.([0-9]*))?([^0-9.]*)")
_INTEGER = re.compile(r"[+-]?[0-9]+")

Payload = dict
Response = tuple[int, Payload]


class ParamError(ValueError):
    """Raised when request parameters are missing or malformed."""


def parse_duration(text: str) -> float:
    """Parse a duration such as "1m", "1h30m" or "1.5s" into seconds."""
    original = text
    rest = text
    negative = False
    if rest and rest[0] in "+-":
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return 0.0
    if not rest:
        raise ParamError(f'time: invalid duration "{original}"')

    limit = _INT64_MAX + 1 if negative else _INT64_MAX
    total = 0
    pos = 0
    while pos < len(rest):
        match = _COMPONENT.match(rest, pos)
        whole, frac, unit = match.group(1), match.group(2), match.group(3)
        if not whole and not frac:
            raise ParamError(f'time: invalid duration "{original}"')
        if not unit:
            raise ParamError(f'time: missing unit in duration "{original}"')
        scale = _UNITS.get(unit)
        if scale is None:
            raise ParamError(f'time: unknown unit "{unit}" in duration "{original}"')
        value = int(whole or "0") * scale
        if frac:
            value += int(float(int(frac)) * (scale / 10 ** len(frac)))
        total += value
        if total > limit:
            raise ParamError(f'time: invalid duration "{original}"')
        pos = match.end()

    seconds, nanos = divmod(total, _NANOS_PER_SEC)
    result = seconds + nanos / 1e9
    return -result if negative else result


def _param(params: Mapping[str, str], key: str, default: str) -> str:
    raw = params.get(key)
    return raw if raw else default


def _parse_float(raw: str) -> float:
    if raw != raw.strip() or "_" in raw:
        raise ParamError(f'strconv.ParseFloat: parsing "{raw}": invalid syntax')
    try:
        return float(raw)
    except ValueError:
        raise ParamError(f'strconv.ParseFloat: parsing "{raw}": invalid syntax') from None


def _seconds(value: float, raw: str) -> int:
    if not math.isfinite(value):
        raise ParamError(f'parsing "{raw}": not a finite number of seconds')
    return int(value)


def _parse_int(raw: str) -> int:
    if not _INTEGER.fullmatch(raw):
        raise ParamError(f'strconv.ParseInt: parsing "{raw}": invalid syntax')
    value = int(raw)
    if not -_INT64_MAX - 1 <= value <= _INT64_MAX:
        raise ParamError(f'strconv.ParseInt: parsing "{raw}": value out of range')
    return value


def parse_start_end(params: Mapping[str, str], now: int | None = None) -> tuple[int, int]:
    """Read start and end seconds; missing values default to the last two weeks."""
    if now is None:
        now = int(time.time())
    raw_start = _param(params, "start", str(now - 2 * _WEEK_SECS))
    start = _parse_float(raw_start)
    raw_end = _param(params, "end", str(now))
    end = _parse_float(raw_end)
    return _seconds(start, raw_start), _seconds(end, raw_end)


def parse_all_params(
    params: Mapping[str, str], now: int | None = None
) -> tuple[int, int, int, int, str, str]:
    """Read (start, end, window_secs, top, instance, instance_type) from query parameters."""
    instance = params.get("instance") or ""
    if not instance:
        raise ParamError("no instance")
    instance_type = params.get("instance_type") or ""
    if not instance_type:
        raise ParamError("no instance_type")

    start, end = parse_start_end(params, now)
    top = _parse_int(_param(params, "top", DEFAULT_TOP))
    window_secs = int(parse_duration(_param(params, "window", DEFAULT_WINDOW)))
    return start, end, window_secs, top, instance, instance_type


def _error(status: int, exc: Exception) -> Response:
    return status, {"status": "error", "message": str(exc)}


class Service:
    """Routes Top SQL HTTP requests to a query backend; also usable as a WSGI app."""

    def __init__(self, query) -> None:
        self._query = query
        self._handlers: dict[str, Callable[[Mapping[str, str]], Response]] = {
            "/v1/instances": self._instances,
        }
        for name in METRIC_NAMES:
            self._handlers["/v1/" + name] = partial(self._records, name)
        self._handlers["/v1/summary"] = self._summary

    def routes(self) -> list[str]:
        """Paths served, in registration order."""
        return list(self._handlers)

    def handle(self, path: str, params: Mapping[str, str]) -> Response:
        """Serve a GET request; returns the status code and the JSON payload."""
        handler = self._handlers.get(path)
        if handler is None:
            return HTTPStatus.NOT_FOUND, {"status": "error", "message": "not found"}
        return handler(params)

    def __call__(self, environ, start_response):
        path = environ.get("PATH_INFO") or "/"
        method = (environ.get("REQUEST_METHOD") or "GET").upper()
        if method == "GET":
            parsed = parse_qs(environ.get("QUERY_STRING", ""), keep_blank_values=True)
            params = {key: values[0] for key, values in parsed.items()}
            status, payload = self.handle(path, params)
        else:
            status, payload = HTTPStatus.NOT_FOUND, {"status": "error", "message": "not found"}
        body = json.dumps(payload).encode("utf-8")
        status = HTTPStatus(status)
        start_response(
            f"{status.value} {status.phrase}",
            [("Content-Type", "application/json; charset=utf-8"), ("Content-Length", str(len(body)))],
        )
        return [body]

    def _run(self, call: Callable[[], list]) -> Response:
        try:
            items = call()
        except (QueryError, ValueError) as exc:
            return _error(HTTPStatus.SERVICE_UNAVAILABLE, exc)
        return HTTPStatus.OK, {"status": "ok", "data": [item.to_dict() for item in items]}

    def _instances(self, params: Mapping[str, str]) -> Response:
        try:
            start, end = parse_start_end(params)
        except ParamError as exc:
            return _error(HTTPStatus.BAD_REQUEST, exc)
        return self._run(lambda: self._query.instances(start, end))

    def _summary(self, params: Mapping[str, str]) -> Response:
        try:
            start, end, window, top, instance, instance_type = parse_all_params(params)
        except ParamError as exc:
            return _error(HTTPStatus.BAD_REQUEST, exc)
        return self._run(lambda: self._query.summary(start, end, window, top, instance, instance_type))

    def _records(self, name: str, params: Mapping[str, str]) -> Response:
        try:
            start, end, window, top, instance, instance_type = parse_all_params(params)
        except ParamError as exc:
            return _error(HTTPStatus.BAD_REQUEST, exc)
        return self._run(
            lambda: self._query.records(name, start, end, window, top, instance, instance_type)
        )