from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

import requests

from .errors import DecodeError, SourceUnavailableError


@dataclass(frozen=True)
class BuildInfo:
    version: str
    edition: str
    flags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class InputMetrics:
    records: int
    bytes: int


@dataclass(frozen=True)
class OutputMetrics:
    proc_records: int
    proc_bytes: int
    errors: int
    retries: int
    retries_failed: int


@dataclass(frozen=True)
class MetricsSnapshot:
    input: Dict[str, InputMetrics] = field(default_factory=dict)
    output: Dict[str, OutputMetrics] = field(default_factory=dict)


class TelemetrySource(Protocol):
    def build_info(self, timeout_s: Optional[float] = None) -> BuildInfo: ...

    def metrics(self, timeout_s: Optional[float] = None) -> MetricsSnapshot: ...


def _require_counter(obj: Mapping[str, Any], key: str, *, where: str) -> int:
    v = obj.get(key, 0)
    if isinstance(v, bool):
        raise DecodeError(f"{where}.{key} must be an int")
    if isinstance(v, int):
        return v
    if isinstance(v, float) and v.is_integer():
        return int(v)
    raise DecodeError(f"{where}.{key} must be an int")


def _require_mapping(obj: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    v = obj.get(key)
    if v is None:
        return {}
    if not isinstance(v, Mapping):
        raise DecodeError(f"'{key}' must be a mapping")
    return v


def parse_build_info(payload: Mapping[str, Any]) -> BuildInfo:
    fb = payload.get("fluent-bit")
    if not isinstance(fb, Mapping):
        raise DecodeError("build info is missing the 'fluent-bit' object")

    version = fb.get("version")
    if not isinstance(version, str) or not version:
        raise DecodeError("build info 'version' must be a non-empty string")

    edition = fb.get("edition")
    if not isinstance(edition, str):
        edition = ""

    flags_raw = fb.get("flags") or []
    if not isinstance(flags_raw, list) or not all(isinstance(f, str) for f in flags_raw):
        raise DecodeError("build info 'flags' must be a list of strings")

    return BuildInfo(version=version, edition=edition, flags=tuple(flags_raw))


def parse_metrics(payload: Mapping[str, Any]) -> MetricsSnapshot:
    inputs: Dict[str, InputMetrics] = {}
    for name, raw in _require_mapping(payload, "input").items():
        if not isinstance(raw, Mapping):
            raise DecodeError(f"input[{name!r}] must be a mapping")
        where = f"input[{name!r}]"
        inputs[str(name)] = InputMetrics(
            records=_require_counter(raw, "records", where=where),
            bytes=_require_counter(raw, "bytes", where=where),
        )

    outputs: Dict[str, OutputMetrics] = {}
    for name, raw in _require_mapping(payload, "output").items():
        if not isinstance(raw, Mapping):
            raise DecodeError(f"output[{name!r}] must be a mapping")
        where = f"output[{name!r}]"
        outputs[str(name)] = OutputMetrics(
            proc_records=_require_counter(raw, "proc_records", where=where),
            proc_bytes=_require_counter(raw, "proc_bytes", where=where),
            errors=_require_counter(raw, "errors", where=where),
            retries=_require_counter(raw, "retries", where=where),
            retries_failed=_require_counter(raw, "retries_failed", where=where),
        )

    return MetricsSnapshot(input=inputs, output=outputs)


class FluentBitClient:
    """Read-only client for the Fluent Bit HTTP monitoring API."""

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout_s: float = 5.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout_s = timeout_s

    def _get_json(self, path: str, timeout_s: Optional[float]) -> Mapping[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.get(url, timeout=timeout_s if timeout_s is not None else self.timeout_s)
        except requests.RequestException as exc:
            raise SourceUnavailableError(f"could not reach fluent bit at {url}: {exc}") from exc

        if resp.status_code >= 400:
            raise SourceUnavailableError(f"fluent bit {path} failed: {resp.status_code} {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise DecodeError(f"could not json decode fluent bit {path} response: {exc}") from exc
        if not isinstance(data, Mapping):
            raise DecodeError(f"fluent bit {path} response was not a JSON object")
        return data

    def build_info(self, timeout_s: Optional[float] = None) -> BuildInfo:
        return parse_build_info(self._get_json("/api/v1/", timeout_s))

    def metrics(self, timeout_s: Optional[float] = None) -> MetricsSnapshot:
        return parse_metrics(self._get_json("/api/v1/metrics", timeout_s))
