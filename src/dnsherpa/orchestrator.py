"""Agent mode dispatch.

``docker`` and ``proxmox`` run one reconciler in the calling thread. ``hybrid``
runs both on worker threads that share the root stop event; one of them
exiting early never cancels the other.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional, Protocol

logger = logging.getLogger(__name__)

MODE_DOCKER = "docker"
MODE_PROXMOX = "proxmox"
MODE_HYBRID = "hybrid"
AGENT_MODES = (MODE_DOCKER, MODE_PROXMOX, MODE_HYBRID)


class ConfigError(ValueError):
    """Invalid configuration detected at startup."""


class Reconciler(Protocol):
    def run(self, stop_event: threading.Event) -> None: ...


class Orchestrator:
    def __init__(
        self,
        mode: str,
        *,
        docker: Optional[Reconciler] = None,
        proxmox: Optional[Reconciler] = None,
        stop_event: Optional[threading.Event] = None,
        join_timeout_seconds: float = 15.0,
        logger: logging.Logger = logger,
    ):
        if mode not in AGENT_MODES:
            raise ConfigError(f"Invalid AGENT_MODE: {mode}. Use one of: {', '.join(AGENT_MODES)}")
        if mode in (MODE_DOCKER, MODE_HYBRID) and docker is None:
            raise ConfigError(f"Agent mode '{mode}' requires a Docker reconciler")
        if mode in (MODE_PROXMOX, MODE_HYBRID) and proxmox is None:
            raise ConfigError(f"Agent mode '{mode}' requires a Proxmox reconciler")

        self.mode = mode
        self.docker = docker
        self.proxmox = proxmox
        self.stop_event = stop_event or threading.Event()
        self.join_timeout = join_timeout_seconds
        self._log = logger
        self._workers: List[threading.Thread] = []

    def stop(self) -> None:
        self.stop_event.set()

    def alive_workers(self) -> List[str]:
        """Names of hybrid workers that have not finished."""
        return [w.name for w in self._workers if w.is_alive()]

    def run(self) -> None:
        """Block until the selected reconciler(s) finish or the stop event fires."""
        self._log.info(f"Starting in {self.mode} mode")
        if self.mode == MODE_DOCKER:
            self.docker.run(self.stop_event)
        elif self.mode == MODE_PROXMOX:
            self.proxmox.run(self.stop_event)
        else:
            self._run_hybrid()

    def _run_hybrid(self) -> None:
        self._workers = [
            self._start_worker("docker", self.docker.run),
            self._start_worker("proxmox", self.proxmox.run),
        ]
        while not self.stop_event.wait(1.0):
            pass

        self._log.info("Stopping reconcilers...")
        for worker in self._workers:
            worker.join(self.join_timeout)
            if worker.is_alive():
                self._log.warning(f"Reconciler {worker.name} did not stop within {self.join_timeout}s")

    def _start_worker(self, name: str, target: Callable[[threading.Event], None]) -> threading.Thread:
        def _run() -> None:
            try:
                target(self.stop_event)
            except Exception as e:
                self._log.error(f"{name} reconciler failed: {e}", exc_info=True)
                return
            if not self.stop_event.is_set():
                self._log.warning(f"{name} reconciler exited early")

        worker = threading.Thread(target=_run, name=name, daemon=True)
        worker.start()
        return worker
