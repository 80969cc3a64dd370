from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Iterator, Literal, Optional, Set

from .cloud import AGENT_TYPE_FLUENTBIT, CloudRegistry, CreateAgentPayload, UpdateAgentOpts, normalize_edition
from .errors import DecodeError, ForwarderError, RegistrationError, TickError, TickSkipped
from .fluentbit import BuildInfo, TelemetrySource
from .store import DeviceIdentity, IdentityStore, decode_identity, encode_identity
from .transcode import NowFn, encode_batch, transcode

log = logging.getLogger("forwarder.loop")

RegistrationState = Literal["unregistered", "registered"]


class ErrorChannel:
    """Bounded error queue shared by the loop and every tick.

    ``report`` never blocks: when the buffer is full the error is dropped and
    counted so a slow consumer cannot stall tick dispatch.
    """

    def __init__(self, maxsize: int = 100) -> None:
        self.maxsize = max(1, int(maxsize))
        self._queue: "queue.Queue[BaseException]" = queue.Queue(maxsize=self.maxsize)
        self._lock = threading.Lock()
        self.dropped_total = 0

    def report(self, err: BaseException) -> bool:
        try:
            self._queue.put_nowait(err)
            return True
        except queue.Full:
            with self._lock:
                self.dropped_total += 1
                dropped = self.dropped_total
            log.warning("error channel full; dropped error", extra={"fields": {"dropped_total": dropped}})
            return False

    def get(self, timeout_s: Optional[float] = None) -> Optional[BaseException]:
        try:
            return self._queue.get(timeout=timeout_s)
        except queue.Empty:
            return None

    def drain(self) -> Iterator[BaseException]:
        while True:
            try:
                yield self._queue.get_nowait()
            except queue.Empty:
                return

    def qsize(self) -> int:
        return self._queue.qsize()


@dataclass
class Forwarder:
    """Registers this machine with the cloud, then forwards metrics on a ticker.

    Startup (build info, identity reconciliation, token install) raises
    ``RegistrationError`` on any failure. After that, tick failures are only
    ever reported on ``errors``.
    """

    hostname: str
    machine_id: str
    store: IdentityStore
    telemetry: TelemetrySource
    cloud: CloudRegistry
    interval_s: float
    raw_config: str = ""
    error_buffer: int = 100
    max_in_flight: Optional[int] = None
    now_fn: Optional[NowFn] = None

    def __post_init__(self) -> None:
        if self.interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.errors = ErrorChannel(self.error_buffer)
        self.state: RegistrationState = "unregistered"
        self.identity: Optional[DeviceIdentity] = None
        self._in_flight: Set[threading.Thread] = set()
        self._in_flight_lock = threading.Lock()
        self.ticks_total = 0

    # -----------------------------
    # Registration
    # -----------------------------

    def register(self) -> DeviceIdentity:
        try:
            build_info = self.telemetry.build_info()
        except ForwarderError as exc:
            raise RegistrationError(f"could not fetch fluent bit build info: {exc}") from exc

        if self.store.has(self.machine_id):
            identity = self._update_existing(build_info)
        else:
            identity = self._create_new(build_info)

        self.cloud.set_agent_token(identity.agent_token)
        self.identity = identity
        self.state = "registered"
        log.info(
            "agent registered",
            extra={"fields": {"agent_id": identity.agent_id, "agent_name": identity.agent_name}},
        )
        return identity

    def _update_existing(self, build_info: BuildInfo) -> DeviceIdentity:
        try:
            raw = self.store.read(self.machine_id)
        except ForwarderError as exc:
            raise RegistrationError(f"could not read from store: {exc}") from exc

        try:
            identity = decode_identity(self.machine_id, raw)
        except DecodeError as exc:
            # Re-registering here would leave a duplicate agent in the cloud.
            raise RegistrationError(f"could not decode store payload: {exc}") from exc

        self.cloud.set_agent_token(identity.agent_token)
        try:
            self.cloud.update_agent(
                identity.agent_id,
                UpdateAgentOpts(
                    name=self.hostname,
                    version=build_info.version,
                    edition=normalize_edition(build_info.edition),
                    flags=build_info.flags,
                    raw_config=self.raw_config,
                ),
            )
        except ForwarderError as exc:
            raise RegistrationError(f"could not update agent: {exc}") from exc
        return identity

    def _create_new(self, build_info: BuildInfo) -> DeviceIdentity:
        try:
            created = self.cloud.create_agent(
                CreateAgentPayload(
                    name=self.hostname,
                    machine_id=self.machine_id,
                    type=AGENT_TYPE_FLUENTBIT,
                    version=build_info.version,
                    edition=normalize_edition(build_info.edition),
                    flags=build_info.flags,
                    raw_config=self.raw_config,
                )
            )
        except ForwarderError as exc:
            raise RegistrationError(f"could not create agent: {exc}") from exc

        identity = DeviceIdentity(
            machine_id=self.machine_id,
            agent_id=created.id,
            agent_token=created.token,
            agent_name=created.name,
        )
        try:
            self.store.write(self.machine_id, encode_identity(identity))
        except ForwarderError as exc:
            raise RegistrationError(
                f"could not write to store (agent {created.id} has no local record): {exc}"
            ) from exc
        return identity

    # -----------------------------
    # Polling loop
    # -----------------------------

    def forward(self, stop: threading.Event) -> None:
        """Register, then tick until ``stop`` is set.

        Returns without waiting for in-flight ticks; call ``drain`` for that.
        """

        identity = self.register()

        next_tick = time.monotonic() + self.interval_s
        while not stop.wait(max(0.0, next_tick - time.monotonic())):
            self._dispatch(identity)
            now = time.monotonic()
            next_tick += self.interval_s
            if next_tick <= now:
                # Slow dispatch; drop missed ticks instead of bursting.
                next_tick = now + self.interval_s

        log.info("forward loop stopped", extra={"fields": {"in_flight": self.in_flight()}})

    def _dispatch(self, identity: DeviceIdentity) -> None:
        self.ticks_total += 1
        with self._in_flight_lock:
            if self.max_in_flight is not None and len(self._in_flight) >= self.max_in_flight:
                self.errors.report(TickSkipped(f"{len(self._in_flight)} ticks still in flight; skipping tick"))
                return
            worker = threading.Thread(
                target=self._run_tick,
                args=(identity,),
                name=f"forwarder-tick-{self.ticks_total}",
                daemon=True,
            )
            self._in_flight.add(worker)
        try:
            worker.start()
        except RuntimeError as exc:
            with self._in_flight_lock:
                self._in_flight.discard(worker)
            self.errors.report(TickError("dispatch", exc))

    def _run_tick(self, identity: DeviceIdentity) -> None:
        try:
            self.tick(identity, deadline=time.monotonic() + self.interval_s)
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(threading.current_thread())

    def tick(self, identity: DeviceIdentity, *, deadline: float) -> bool:
        """Fetch, encode and push one snapshot. Failures go to ``errors``."""

        try:
            snapshot = self.telemetry.metrics(timeout_s=_remaining(deadline))
        except Exception as exc:
            self.errors.report(TickError("fetch", exc))
            return False

        try:
            encoded = encode_batch(transcode(snapshot, self.now_fn))
        except Exception as exc:
            self.errors.report(TickError("encode", exc))
            return False

        try:
            self.cloud.add_metrics(identity.agent_id, encoded, timeout_s=_remaining(deadline))
        except Exception as exc:
            self.errors.report(TickError("push", exc))
            return False
        return True

    def in_flight(self) -> int:
        with self._in_flight_lock:
            return len(self._in_flight)

    def drain(self, timeout_s: Optional[float] = None) -> bool:
        """Join in-flight ticks. Returns False if some are still running."""

        deadline = None if timeout_s is None else time.monotonic() + timeout_s
        with self._in_flight_lock:
            workers = list(self._in_flight)
        for worker in workers:
            worker.join(None if deadline is None else max(0.0, deadline - time.monotonic()))
        return self.in_flight() == 0


def _remaining(deadline: float) -> float:
    # requests rejects a zero timeout.
    return max(0.001, deadline - time.monotonic())
