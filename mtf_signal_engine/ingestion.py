"""Candle ingestion: raw payload field -> ordered, deduplicated candle series.

Supported encodings are modelled as explicit variants. `classify` decides the
variant once; `rows_from` turns each variant into candle rows. Nothing here
raises on bad input: unusable payloads become an empty series.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .indicators import is_finite_number
from .models import Candle

log = logging.getLogger("ingestion")

KLINE_FIELDS = 12
MAX_WRAP_DEPTH = 4

TIME_KEYS = ("openTime", "t", "time", "timestamp", "datetime")
OPEN_KEYS = ("open", "o", "price")
HIGH_KEYS = ("high", "h")
LOW_KEYS = ("low", "l")
CLOSE_KEYS = ("close", "c")
VOLUME_KEYS = ("volume", "v")


@dataclass(frozen=True)
class FlatNumbers:
    values: Tuple[Any, ...]
    width: int = KLINE_FIELDS


@dataclass(frozen=True)
class ArrayRows:
    rows: Tuple[Sequence[Any], ...]


@dataclass(frozen=True)
class KeyedRows:
    rows: Tuple[Mapping[str, Any], ...]


@dataclass(frozen=True)
class VendorValues:
    rows: Tuple[Any, ...]


@dataclass(frozen=True)
class Wrapped:
    inner: Any


@dataclass(frozen=True)
class Unusable:
    why: str


CandlePayload = Union[FlatNumbers, ArrayRows, KeyedRows, VendorValues, Wrapped, Unusable]


def decode_field(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return None
    return raw


def _is_row_list(x: Any) -> bool:
    return isinstance(x, (list, tuple))


def classify(decoded: Any) -> CandlePayload:
    if decoded is None:
        return Unusable("empty")
    if isinstance(decoded, Mapping):
        if isinstance(decoded.get("values"), list):
            return VendorValues(tuple(decoded["values"]))
        for key in ("data", "body"):
            if key in decoded:
                return Wrapped(decoded[key])
        return Unusable("mapping without data/body/values")
    if not _is_row_list(decoded):
        return Unusable(f"unsupported type {type(decoded).__name__}")
    if not decoded:
        return Unusable("empty")

    first = decoded[0]
    if isinstance(first, Mapping):
        if isinstance(first.get("values"), list):
            return VendorValues(tuple(first["values"]))
        return KeyedRows(tuple(r for r in decoded if isinstance(r, Mapping)))
    if _is_row_list(first):
        return ArrayRows(tuple(r for r in decoded if _is_row_list(r)))
    if len(decoded) % KLINE_FIELDS == 0:
        return FlatNumbers(tuple(decoded))
    return Unusable("flat array length is not a multiple of the kline width")


def _num(v: Any) -> Optional[float]:
    if isinstance(v, str):
        v = v.strip()
        if not v:
            return None
    if not is_finite_number(v):
        return None
    return float(v)


def _time_ms(v: Any) -> Optional[int]:
    n = _num(v)
    if n is not None:
        return int(n)
    if not isinstance(v, str):
        return None
    text = v.strip().replace("Z", "+00:00")
    for parser in (datetime.fromisoformat, lambda s: datetime.strptime(s, "%Y-%m-%d %H:%M:%S")):
        try:
            dt = parser(text)
        except ValueError:
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    return None


def _pick(row: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for k in keys:
        if row.get(k) is not None:
            return row[k]
    return None


def _candle(t: Any, o: Any, h: Any, l: Any, c: Any, v: Any) -> Optional[Candle]:
    ts = _time_ms(t)
    op, hi, lo, cl = _num(o), _num(h), _num(l), _num(c)
    if ts is None or op is None or hi is None or lo is None or cl is None:
        return None
    return Candle(open_time_ms=ts, open=op, high=hi, low=lo, close=cl, volume=_num(v))


def _from_array_row(row: Sequence[Any]) -> Optional[Candle]:
    if len(row) < 5:
        return None
    return _candle(row[0], row[1], row[2], row[3], row[4], row[5] if len(row) > 5 else None)


def _from_keyed_row(row: Mapping[str, Any]) -> Optional[Candle]:
    return _candle(
        _pick(row, TIME_KEYS),
        _pick(row, OPEN_KEYS),
        _pick(row, HIGH_KEYS),
        _pick(row, LOW_KEYS),
        _pick(row, CLOSE_KEYS),
        _pick(row, VOLUME_KEYS),
    )


def rows_from(payload: CandlePayload, depth: int = 0) -> List[Candle]:
    if isinstance(payload, FlatNumbers):
        w = payload.width
        chunks = [payload.values[i: i + w] for i in range(0, len(payload.values), w)]
        return [c for c in (_from_array_row(ch) for ch in chunks) if c is not None]
    if isinstance(payload, ArrayRows):
        return [c for c in (_from_array_row(r) for r in payload.rows) if c is not None]
    if isinstance(payload, KeyedRows):
        return [c for c in (_from_keyed_row(r) for r in payload.rows) if c is not None]
    if isinstance(payload, VendorValues):
        out: List[Candle] = []
        for r in payload.rows:
            c = _from_keyed_row(r) if isinstance(r, Mapping) else (_from_array_row(r) if _is_row_list(r) else None)
            if c is not None:
                out.append(c)
        return out
    if isinstance(payload, Wrapped):
        if depth >= MAX_WRAP_DEPTH:
            return []
        return rows_from(classify(decode_field(payload.inner)), depth + 1)
    return []


def finalize(candles: Iterable[Candle], max_bars: Optional[int] = None) -> Tuple[Candle, ...]:
    """Sort by open time (stable), keep the first candle per open time, keep the last max_bars."""
    ordered = sorted(candles, key=lambda c: c.open_time_ms)
    out: List[Candle] = []
    seen = set()
    for c in ordered:
        if c.open_time_ms in seen:
            continue
        seen.add(c.open_time_ms)
        out.append(c)
    if max_bars is not None and max_bars > 0 and len(out) > max_bars:
        out = out[-max_bars:]
    return tuple(out)


def normalize_candles(raw: Any, max_bars: Optional[int] = None) -> Tuple[Candle, ...]:
    payload = classify(decode_field(raw))
    if isinstance(payload, Unusable):
        if raw is not None:
            log.debug("ingest_unusable why=%s", payload.why)
        return ()
    return finalize(rows_from(payload), max_bars)
