from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Mapping, Tuple

import msgpack

from .errors import DecodeError, EncodeError
from .fluentbit import MetricsSnapshot

NowFn = Callable[[], datetime]

MetricKind = Literal["counter"]

WIRE_VERSION = 2
PLUGIN_LABEL = "plugin"

# On-wire metric type codes.
_KIND_CODES: Dict[str, int] = {"counter": 0}
_KIND_NAMES: Dict[int, str] = {v: k for k, v in _KIND_CODES.items()}

_INPUT_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("records", "records"),
    ("bytes", "bytes"),
)
_OUTPUT_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("proc_records", "proc_records"),
    ("proc_bytes", "proc_bytes"),
    ("errors", "errors"),
    ("retries", "retries"),
    ("retries_failed", "retries_failed"),
)


@dataclass(frozen=True)
class WireValue:
    timestamp_ns: int
    value: float
    label_indices: Tuple[int, ...]


@dataclass(frozen=True)
class WireMetric:
    kind: MetricKind
    namespace: str
    subsystem: str
    name: str
    fully_qualified_name: str
    labels: Tuple[str, ...]
    values: Tuple[WireValue, ...]


@dataclass(frozen=True)
class WireBatch:
    """One tick's worth of metrics.

    ``label_indices`` on every value point into ``label_dictionary``.
    """

    timestamp_ns: int
    label_dictionary: Tuple[str, ...]
    metrics: Tuple[WireMetric, ...]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_unix_ns(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    delta = ts - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86_400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1_000


def transcode(snapshot: MetricsSnapshot, now_fn: NowFn | None = None) -> WireBatch:
    """Map one snapshot to counters; the clock is read exactly once."""

    ts_ns = _to_unix_ns((now_fn or _utcnow)())

    dictionary: List[str] = []
    index: Dict[str, int] = {}

    def _label_index(value: str) -> int:
        if value not in index:
            index[value] = len(dictionary)
            dictionary.append(value)
        return index[value]

    metrics: List[WireMetric] = []

    def _emit(namespace: str, plugin: str, name: str, value: int) -> None:
        metrics.append(
            WireMetric(
                kind="counter",
                namespace=namespace,
                subsystem=plugin,
                name=name,
                fully_qualified_name=f"{namespace}.{plugin}.{name}",
                labels=(PLUGIN_LABEL,),
                values=(WireValue(timestamp_ns=ts_ns, value=float(value), label_indices=(_label_index(plugin),)),),
            )
        )

    for plugin in sorted(snapshot.input):
        m = snapshot.input[plugin]
        for attr, name in _INPUT_FIELDS:
            _emit("input", plugin, name, getattr(m, attr))

    for plugin in sorted(snapshot.output):
        m = snapshot.output[plugin]
        for attr, name in _OUTPUT_FIELDS:
            _emit("output", plugin, name, getattr(m, attr))

    return WireBatch(timestamp_ns=ts_ns, label_dictionary=tuple(dictionary), metrics=tuple(metrics))


def _metric_to_wire(metric: WireMetric) -> Dict[str, Any]:
    try:
        kind_code = _KIND_CODES[metric.kind]
    except KeyError:
        raise EncodeError(f"unsupported metric kind {metric.kind!r}") from None

    return {
        "meta": {
            "ver": WIRE_VERSION,
            "type": kind_code,
            "opts": {
                "ns": metric.namespace,
                "ss": metric.subsystem,
                "name": metric.name,
                "fqname": metric.fully_qualified_name,
            },
            "labels": list(metric.labels),
        },
        "values": [
            {"ts": v.timestamp_ns, "value": v.value, "labels": list(v.label_indices)}
            for v in metric.values
        ],
    }


def encode_batch(batch: WireBatch) -> bytes:
    blob = {
        "meta": {"ver": WIRE_VERSION, "ts": batch.timestamp_ns},
        "label_dictionary": list(batch.label_dictionary),
        "metrics": [_metric_to_wire(m) for m in batch.metrics],
    }
    try:
        return msgpack.packb(blob, use_bin_type=True)
    except (TypeError, ValueError, OverflowError) as exc:
        raise EncodeError(f"could not msgpack encode metrics batch: {exc}") from exc


def _mapping(obj: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(obj, Mapping):
        raise DecodeError(f"{what} must be a map")
    return obj


def _int_list(obj: Any, what: str) -> Tuple[int, ...]:
    if not isinstance(obj, (list, tuple)) or not all(isinstance(i, int) and not isinstance(i, bool) for i in obj):
        raise DecodeError(f"{what} must be a list of ints")
    return tuple(obj)


def _metric_from_wire(raw: Any, dictionary_size: int) -> WireMetric:
    m = _mapping(raw, "metric")
    meta = _mapping(m.get("meta"), "metric meta")
    opts = _mapping(meta.get("opts"), "metric opts")

    type_code = meta.get("type")
    kind = _KIND_NAMES.get(type_code) if isinstance(type_code, int) else None
    if kind is None:
        raise DecodeError(f"unsupported metric type {meta.get('type')!r}")

    labels = meta.get("labels") or []
    if not isinstance(labels, (list, tuple)) or not all(isinstance(s, str) for s in labels):
        raise DecodeError("metric labels must be a list of strings")

    values_raw = m.get("values") or []
    if not isinstance(values_raw, (list, tuple)):
        raise DecodeError("metric values must be a list")

    values: List[WireValue] = []
    for rv in values_raw:
        v = _mapping(rv, "metric value")
        ts = v.get("ts")
        value = v.get("value")
        if not isinstance(ts, int) or isinstance(ts, bool):
            raise DecodeError("metric value ts must be an int")
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            raise DecodeError("metric value must be a number")
        indices = _int_list(v.get("labels") or [], "metric value labels")
        if any(i < 0 or i >= dictionary_size for i in indices):
            raise DecodeError("metric value label index out of range")
        values.append(WireValue(timestamp_ns=ts, value=float(value), label_indices=indices))

    try:
        return WireMetric(
            kind=kind,  # type: ignore[arg-type]
            namespace=str(opts["ns"]),
            subsystem=str(opts["ss"]),
            name=str(opts["name"]),
            fully_qualified_name=str(opts["fqname"]),
            labels=tuple(labels),
            values=tuple(values),
        )
    except KeyError as exc:
        raise DecodeError(f"metric opts missing {exc}") from exc


def decode_batch(raw: bytes) -> WireBatch:
    try:
        blob = msgpack.unpackb(raw, raw=False)
    except (msgpack.exceptions.ExtraData, msgpack.exceptions.UnpackException, ValueError, TypeError) as exc:
        raise DecodeError(f"could not msgpack decode metrics batch: {exc}") from exc

    top = _mapping(blob, "metrics batch")
    meta = _mapping(top.get("meta"), "batch meta")
    ts = meta.get("ts")
    if not isinstance(ts, int) or isinstance(ts, bool):
        raise DecodeError("batch meta ts must be an int")

    dictionary = top.get("label_dictionary") or []
    if not isinstance(dictionary, (list, tuple)) or not all(isinstance(s, str) for s in dictionary):
        raise DecodeError("label_dictionary must be a list of strings")

    metrics_raw = top.get("metrics") or []
    if not isinstance(metrics_raw, (list, tuple)):
        raise DecodeError("metrics must be a list")

    return WireBatch(
        timestamp_ns=ts,
        label_dictionary=tuple(dictionary),
        metrics=tuple(_metric_from_wire(m, len(dictionary)) for m in metrics_raw),
    )
