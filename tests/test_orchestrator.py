"""Unit tests for agent mode dispatch."""

import threading
from typing import List

import pytest

from dnsherpa.orchestrator import ConfigError, Orchestrator


class RecordingReconciler:
    """Reconciler stub that can block, return early, fail or ignore stop."""

    def __init__(self, behavior: str = "block"):
        self.behavior = behavior
        self.started = threading.Event()
        self.finished = threading.Event()
        self.release = threading.Event()
        self.seen_events: List[threading.Event] = []

    def run(self, stop_event: threading.Event) -> None:
        self.seen_events.append(stop_event)
        self.started.set()
        try:
            if self.behavior == "fail":
                raise RuntimeError("event stream closed")
            if self.behavior == "return":
                return
            if self.behavior == "stuck":
                self.release.wait(5)
                return
            stop_event.wait(5)
        finally:
            self.finished.set()


def test_invalid_mode_is_config_error() -> None:
    with pytest.raises(ConfigError):
        Orchestrator("kubernetes", docker=RecordingReconciler())


def test_missing_reconciler_for_mode_is_config_error() -> None:
    with pytest.raises(ConfigError):
        Orchestrator("hybrid", docker=RecordingReconciler())


def test_docker_mode_runs_in_calling_thread() -> None:
    docker = RecordingReconciler(behavior="return")
    orchestrator = Orchestrator("docker", docker=docker)

    orchestrator.run()

    assert docker.seen_events == [orchestrator.stop_event]


def test_single_mode_propagates_errors() -> None:
    orchestrator = Orchestrator("proxmox", proxmox=RecordingReconciler(behavior="fail"))

    with pytest.raises(RuntimeError):
        orchestrator.run()


def test_hybrid_early_failure_does_not_cancel_other() -> None:
    docker = RecordingReconciler(behavior="fail")
    proxmox = RecordingReconciler(behavior="block")
    orchestrator = Orchestrator("hybrid", docker=docker, proxmox=proxmox, join_timeout_seconds=5)

    runner = threading.Thread(target=orchestrator.run)
    runner.start()

    assert docker.finished.wait(5)
    assert proxmox.started.wait(5)
    assert not proxmox.finished.is_set()
    assert not orchestrator.stop_event.is_set()
    assert runner.is_alive()

    orchestrator.stop()
    runner.join(10)

    assert not runner.is_alive()
    assert proxmox.finished.is_set()


def test_hybrid_shares_one_stop_event() -> None:
    docker = RecordingReconciler()
    proxmox = RecordingReconciler()
    stop_event = threading.Event()
    orchestrator = Orchestrator("hybrid", docker=docker, proxmox=proxmox, stop_event=stop_event)

    runner = threading.Thread(target=orchestrator.run)
    runner.start()
    assert docker.started.wait(5)
    assert proxmox.started.wait(5)
    stop_event.set()
    runner.join(10)

    assert docker.seen_events == [stop_event]
    assert proxmox.seen_events == [stop_event]
    assert docker.finished.is_set() and proxmox.finished.is_set()
    assert orchestrator.alive_workers() == []


def test_hybrid_reports_worker_that_outlives_join_timeout() -> None:
    docker = RecordingReconciler()
    proxmox = RecordingReconciler(behavior="stuck")
    orchestrator = Orchestrator("hybrid", docker=docker, proxmox=proxmox, join_timeout_seconds=0.1)

    runner = threading.Thread(target=orchestrator.run)
    runner.start()
    assert docker.started.wait(5)
    assert proxmox.started.wait(5)
    orchestrator.stop()
    runner.join(10)

    try:
        assert not runner.is_alive()
        assert orchestrator.alive_workers() == ["proxmox"]
    finally:
        proxmox.release.set()
    assert proxmox.finished.wait(5)


def test_single_mode_has_no_workers() -> None:
    orchestrator = Orchestrator("docker", docker=RecordingReconciler(behavior="return"))
    orchestrator.run()
    assert orchestrator.alive_workers() == []
