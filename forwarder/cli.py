from __future__ import annotations

import logging
import signal
import threading
from pathlib import Path
from typing import Optional, Sequence

import requests
from dotenv import load_dotenv

from .cloud import CloudClient, get_dialect
from .config import Settings, load_settings, read_raw_config
from .errors import ConfigError, RegistrationError
from .fluentbit import FluentBitClient
from .forwarder import ErrorChannel, Forwarder
from .observability import configure_logging, parse_log_level
from .store import DiskStore

log = logging.getLogger("forwarder")


def build_forwarder(settings: Settings, *, session: Optional[requests.Session] = None) -> Forwarder:
    http = session or requests.Session()
    return Forwarder(
        hostname=settings.hostname,
        machine_id=settings.machine_id,
        raw_config=read_raw_config(settings.config_file),
        store=DiskStore(settings.store_path),
        telemetry=FluentBitClient(settings.agent_url, session=http),
        cloud=CloudClient(
            settings.cloud_url,
            project_token=settings.project_token,
            dialect=get_dialect(settings.dialect),
            session=http,
        ),
        interval_s=settings.interval_s,
        error_buffer=settings.error_buffer,
        max_in_flight=settings.max_in_flight,
    )


def _log_errors(errors: ErrorChannel, done: threading.Event) -> None:
    while not done.is_set():
        err = errors.get(timeout_s=0.5)
        if err is not None:
            log.warning("%s", err)
    for err in errors.drain():
        log.warning("%s", err)


def run(settings: Settings, stop: threading.Event) -> None:
    fd = build_forwarder(settings)

    done = threading.Event()
    consumer = threading.Thread(target=_log_errors, args=(fd.errors, done), name="forwarder-errors", daemon=True)
    consumer.start()
    try:
        fd.forward(stop)
        if not fd.drain(timeout_s=settings.interval_s):
            log.warning("ticks still in flight at exit", extra={"fields": {"in_flight": fd.in_flight()}})
    finally:
        done.set()
        consumer.join()


def main(argv: Optional[Sequence[str]] = None) -> None:
    # Load repo-level .env (if present), then package-local overrides.
    load_dotenv()
    load_dotenv(Path(__file__).resolve().parent / ".env")

    try:
        settings = load_settings(argv)
        configure_logging(level=parse_log_level(settings.log_level), log_format=settings.log_format)
    except ValueError as exc:
        raise SystemExit(f"[cloud-forwarder] invalid config: {exc}") from exc

    if settings.hostname_generated:
        log.info("generated hostname", extra={"fields": {"generated_hostname": settings.hostname}})
    if settings.machine_id_generated:
        log.info("generated machine id", extra={"fields": {"generated_machine_id": settings.machine_id}})

    stop = threading.Event()

    def _on_signal(signum: int, _frame: object) -> None:
        log.info("received signal; stopping", extra={"fields": {"signal": signum}})
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    log.info(
        "starting",
        extra={
            "fields": {
                "agent": settings.agent_url,
                "cloud": settings.cloud_url,
                "dialect": settings.dialect,
                "machine_id": settings.machine_id,
                "interval_s": settings.interval_s,
                "store": settings.store_path,
            }
        },
    )

    try:
        run(settings, stop)
    except (RegistrationError, ConfigError) as exc:
        log.error("startup failed: %s", exc)
        raise SystemExit(1) from exc
