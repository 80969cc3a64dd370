from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Optional

import pytest

import forwarder.forwarder as fwd_mod
from forwarder.cloud import CreateAgentPayload, CreatedAgent, CreatedAgentMetrics, UpdateAgentOpts
from forwarder.errors import (
    EncodeError,
    RegistrationError,
    SourceUnavailableError,
    StorageError,
    TickError,
    TickSkipped,
)
from forwarder.fluentbit import BuildInfo, InputMetrics, MetricsSnapshot
from forwarder.forwarder import ErrorChannel, Forwarder
from forwarder.store import DeviceIdentity, encode_identity
from forwarder.transcode import decode_batch


class _MemoryStore:
    def __init__(self, *, fail_writes: bool = False) -> None:
        self.data: dict[str, bytes] = {}
        self.fail_writes = fail_writes
        self.writes = 0

    def has(self, key: str) -> bool:
        return key in self.data

    def read(self, key: str) -> bytes:
        return self.data[key]

    def write(self, key: str, value: bytes) -> None:
        if self.fail_writes:
            raise StorageError("disk full")
        self.writes += 1
        self.data[key] = value

    def erase(self, key: str) -> None:
        self.data.pop(key, None)


class _FakeTelemetry:
    def __init__(self, *, build_error: Optional[Exception] = None, metric_errors: Optional[list] = None) -> None:
        self.build_error = build_error
        self.metric_errors = list(metric_errors or [])
        self.metrics_calls = 0

    def build_info(self, timeout_s: Optional[float] = None) -> BuildInfo:
        if self.build_error is not None:
            raise self.build_error
        return BuildInfo(version="1.8.3", edition="Community", flags=("FLB_HAVE_TLS",))

    def metrics(self, timeout_s: Optional[float] = None) -> MetricsSnapshot:
        self.metrics_calls += 1
        if self.metric_errors:
            err = self.metric_errors.pop(0)
            if err is not None:
                raise err
        return MetricsSnapshot(input={"cpu.0": InputMetrics(records=10, bytes=12)})


class _FakeCloud:
    def __init__(self, *, pushes_wanted: int = 0, block: Optional[threading.Event] = None) -> None:
        self.events: list[tuple[str, Any]] = []
        self.token = ""
        self.pushed: list[bytes] = []
        self.pushes_wanted = pushes_wanted
        self.enough_pushes = threading.Event()
        self.block = block
        self._lock = threading.Lock()

    def set_agent_token(self, token: str) -> None:
        self.token = token
        self.events.append(("set_agent_token", token))

    def create_agent(self, payload: CreateAgentPayload, timeout_s: Optional[float] = None) -> CreatedAgent:
        self.events.append(("create_agent", payload))
        return CreatedAgent(id="agent-1", token="agent-tok-1", name=payload.name, created_at=None)

    def update_agent(self, agent_id: str, opts: UpdateAgentOpts, timeout_s: Optional[float] = None) -> None:
        self.events.append(("update_agent", (self.token, agent_id, opts)))

    def add_metrics(self, agent_id: str, encoded: bytes, timeout_s: Optional[float] = None) -> CreatedAgentMetrics:
        if self.block is not None:
            self.block.wait(5.0)
        with self._lock:
            self.events.append(("add_metrics", (self.token, agent_id)))
            self.pushed.append(encoded)
            if self.pushes_wanted and len(self.pushed) >= self.pushes_wanted:
                self.enough_pushes.set()
        return CreatedAgentMetrics(total_inserted=2)

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


def _forwarder(store: Any, telemetry: Any, cloud: Any, **kwargs: Any) -> Forwarder:
    return Forwarder(
        hostname="calm-otter",
        machine_id="machine-1",
        raw_config="[INPUT]\n    Name cpu\n",
        store=store,
        telemetry=telemetry,
        cloud=cloud,
        interval_s=kwargs.pop("interval_s", 1.0),
        now_fn=lambda: datetime(2026, 2, 21, tzinfo=timezone.utc),
        **kwargs,
    )


def test_first_run_creates_once_then_second_run_updates() -> None:
    store = _MemoryStore()

    cloud1 = _FakeCloud()
    identity = _forwarder(store, _FakeTelemetry(), cloud1).register()

    assert cloud1.names() == ["create_agent", "set_agent_token"]
    payload = cloud1.events[0][1]
    assert payload.machine_id == "machine-1"
    assert payload.type == "fluentbit"
    assert payload.edition == "community"
    assert store.writes == 1
    assert identity == DeviceIdentity("machine-1", "agent-1", "agent-tok-1", "calm-otter")

    cloud2 = _FakeCloud()
    fd2 = _forwarder(store, _FakeTelemetry(), cloud2)
    assert fd2.register() == identity
    assert "create_agent" not in cloud2.names()
    assert cloud2.names().count("update_agent") == 1
    assert store.writes == 1
    assert fd2.state == "registered"


def test_existing_identity_never_creates_across_restarts() -> None:
    store = _MemoryStore()
    store.data["machine-1"] = encode_identity(DeviceIdentity("machine-1", "agent-7", "tok-7", "old-name"))

    for _ in range(3):
        cloud = _FakeCloud()
        _forwarder(store, _FakeTelemetry(), cloud).register()
        assert "create_agent" not in cloud.names()
        (token, agent_id, opts) = [v for n, v in cloud.events if n == "update_agent"][0]
        assert (token, agent_id) == ("tok-7", "agent-7")
        assert opts.name == "calm-otter"
        assert opts.version == "1.8.3"
        assert opts.flags == ("FLB_HAVE_TLS",)
        assert opts.raw_config.startswith("[INPUT]")
    assert store.writes == 0


def test_undecodable_record_is_fatal_and_does_not_reregister() -> None:
    store = _MemoryStore()
    store.data["machine-1"] = b"not json"
    cloud = _FakeCloud()

    with pytest.raises(RegistrationError, match="decode"):
        _forwarder(store, _FakeTelemetry(), cloud).register()
    assert cloud.events == []


def test_build_info_failure_is_fatal_before_any_cloud_call() -> None:
    cloud = _FakeCloud()
    fd = _forwarder(_MemoryStore(), _FakeTelemetry(build_error=SourceUnavailableError("refused")), cloud)

    with pytest.raises(RegistrationError):
        fd.forward(threading.Event())
    assert cloud.events == []
    assert fd.state == "unregistered"


def test_store_write_failure_is_fatal_and_token_not_installed() -> None:
    cloud = _FakeCloud()
    with pytest.raises(RegistrationError, match="write to store"):
        _forwarder(_MemoryStore(fail_writes=True), _FakeTelemetry(), cloud).register()
    assert cloud.names() == ["create_agent"]


def test_token_is_installed_before_any_authenticated_call() -> None:
    cloud = _FakeCloud(pushes_wanted=1)
    fd = _forwarder(_MemoryStore(), _FakeTelemetry(), cloud, interval_s=0.01)
    stop = threading.Event()

    runner = threading.Thread(target=fd.forward, args=(stop,))
    runner.start()
    assert cloud.enough_pushes.wait(5.0)
    stop.set()
    runner.join(5.0)
    assert fd.drain(5.0)

    installed: set[str] = set()
    for name, value in cloud.events:
        if name == "set_agent_token":
            installed.add(value)
        elif name in ("update_agent", "add_metrics"):
            assert value[0] in installed
            assert value[0] == "agent-tok-1"


def test_failed_tick_is_reported_and_next_tick_still_runs() -> None:
    telemetry = _FakeTelemetry(metric_errors=[SourceUnavailableError("fluent bit down")])
    cloud = _FakeCloud(pushes_wanted=1)
    fd = _forwarder(_MemoryStore(), telemetry, cloud, interval_s=0.01)
    stop = threading.Event()

    runner = threading.Thread(target=fd.forward, args=(stop,))
    runner.start()
    assert cloud.enough_pushes.wait(5.0)
    stop.set()
    runner.join(5.0)
    assert not runner.is_alive()
    fd.drain(5.0)

    first = fd.errors.get(timeout_s=1.0)
    assert isinstance(first, TickError)
    assert first.step == "fetch"
    assert isinstance(first.cause, SourceUnavailableError)
    assert telemetry.metrics_calls >= 2

    batch = decode_batch(cloud.pushed[0])
    assert {m.fully_qualified_name for m in batch.metrics} == {"input.cpu.0.records", "input.cpu.0.bytes"}


def test_tick_reports_encode_and_push_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    cloud = _FakeCloud()
    fd = _forwarder(_MemoryStore(), _FakeTelemetry(), cloud)
    identity = fd.register()

    def _boom(_batch: Any) -> bytes:
        raise EncodeError("codec exploded")

    monkeypatch.setattr(fwd_mod, "encode_batch", _boom)
    assert fd.tick(identity, deadline=fwd_mod.time.monotonic() + 1.0) is False
    err = fd.errors.get(timeout_s=0)
    assert isinstance(err, TickError) and err.step == "encode"
    assert cloud.pushed == []

    monkeypatch.undo()

    def _push_fails(*_args: Any, **_kwargs: Any) -> CreatedAgentMetrics:
        raise SourceUnavailableError("cloud unreachable")

    monkeypatch.setattr(cloud, "add_metrics", _push_fails)
    assert fd.tick(identity, deadline=fwd_mod.time.monotonic() + 1.0) is False
    err = fd.errors.get(timeout_s=0)
    assert isinstance(err, TickError) and err.step == "push"


def test_max_in_flight_skips_overlapping_tick() -> None:
    release = threading.Event()
    cloud = _FakeCloud(block=release)
    fd = _forwarder(_MemoryStore(), _FakeTelemetry(), cloud, max_in_flight=1)
    identity = fd.register()

    fd._dispatch(identity)  # noqa: SLF001 - exercise dispatch without the ticker
    fd._dispatch(identity)  # noqa: SLF001

    skipped = fd.errors.get(timeout_s=1.0)
    assert isinstance(skipped, TickSkipped)
    assert fd.in_flight() == 1

    release.set()
    assert fd.drain(5.0) is True
    assert fd.in_flight() == 0
    assert len(cloud.pushed) == 1


def test_failed_thread_start_is_reported_and_not_left_in_flight(monkeypatch: pytest.MonkeyPatch) -> None:
    cloud = _FakeCloud()
    fd = _forwarder(_MemoryStore(), _FakeTelemetry(), cloud, max_in_flight=1)
    identity = fd.register()

    def _no_threads(_self: threading.Thread) -> None:
        raise RuntimeError("can't start new thread")

    monkeypatch.setattr(fwd_mod.threading.Thread, "start", _no_threads)

    fd._dispatch(identity)  # noqa: SLF001
    fd._dispatch(identity)  # noqa: SLF001

    for _ in range(2):
        err = fd.errors.get(timeout_s=1.0)
        assert isinstance(err, TickError) and err.step == "dispatch"
        assert "can't start new thread" in str(err)
    assert fd.in_flight() == 0
    assert fd.drain(0.1) is True
    assert cloud.pushed == []


def test_error_channel_drops_instead_of_blocking() -> None:
    channel = ErrorChannel(maxsize=2)
    assert channel.report(RuntimeError("a")) is True
    assert channel.report(RuntimeError("b")) is True
    assert channel.report(RuntimeError("c")) is False
    assert channel.dropped_total == 1
    assert [str(e) for e in channel.drain()] == ["a", "b"]
    assert channel.get(timeout_s=0) is None


def test_forwarder_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        _forwarder(_MemoryStore(), _FakeTelemetry(), _FakeCloud(), interval_s=0)
