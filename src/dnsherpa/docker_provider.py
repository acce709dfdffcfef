"""Docker discovery: Traefik router labels to DNS records.

Every running container whose labels declare a Traefik HTTP router rule is
announced under each ``Host(`...`)`` in that rule. All hosts point at the same
DNS target (the Docker host's FQDN or IP), decided once at startup.
"""

from __future__ import annotations

import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional

import docker
import requests
from docker.errors import DockerException

from dnsherpa.records import RecordPublisher, RecordStoreError

logger = logging.getLogger(__name__)

ROUTER_LABEL_PREFIX = "traefik.http.routers."
ROUTER_RULE_SUFFIX = ".rule"
HOST_RULE_RE = re.compile(r"Host\(\s*`([^`]+)`\s*\)")


class DockerStreamError(Exception):
    """The Docker event stream failed or closed unexpectedly."""


# =============================================================================
# Label Parsing
# =============================================================================


def extract_hosts_from_labels(labels: Optional[Mapping[str, str]]) -> List[str]:
    """Extract hostnames from Traefik router rule labels.

    Keys must contain both ``traefik.http.routers.`` and ``.rule``. Hostnames
    are returned in label order, then rule order; duplicates are kept.
    """
    hosts: List[str] = []
    for key, value in (labels or {}).items():
        if ROUTER_LABEL_PREFIX not in key or ROUTER_RULE_SUFFIX not in key:
            continue
        hosts.extend(m.group(1) for m in HOST_RULE_RE.finditer(value or ""))
    return hosts


# =============================================================================
# Container Platform Interface and Implementations
# =============================================================================


@dataclass(frozen=True)
class ContainerInfo:
    id: str
    name: str
    labels: Dict[str, str] = field(default_factory=dict)


class EventStream(ABC):
    """Iterable of decoded events that can be closed from another thread."""

    @abstractmethod
    def __iter__(self) -> Iterator[Dict[str, Any]]:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class ContainerPlatform(ABC):
    """Abstract container engine."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the platform name for logging."""
        pass

    @abstractmethod
    def list_running(self) -> List[ContainerInfo]:
        """List currently running containers."""
        pass

    @abstractmethod
    def inspect(self, container_id: str) -> ContainerInfo:
        """Read the current state of one container."""
        pass

    @abstractmethod
    def events(self) -> EventStream:
        """Open the live event stream."""
        pass

    def close(self) -> None:
        pass


class _DockerEventStream(EventStream):
    def __init__(self, stream):
        self._stream = stream

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter(self._stream)

    def close(self) -> None:
        self._stream.close()


class DockerEngine(ContainerPlatform):
    """Docker Engine accessed through the docker SDK (DOCKER_HOST aware)."""

    def __init__(self, timeout_seconds: int = 10, client: Optional[docker.DockerClient] = None):
        self._client = client or docker.from_env(timeout=timeout_seconds)

    @property
    def name(self) -> str:
        return "Docker"

    def list_running(self) -> List[ContainerInfo]:
        return [_container_info(c) for c in self._client.containers.list()]

    def inspect(self, container_id: str) -> ContainerInfo:
        return _container_info(self._client.containers.get(container_id))

    def events(self) -> EventStream:
        return _DockerEventStream(self._client.events(decode=True))

    def close(self) -> None:
        self._client.close()


def _container_info(container) -> ContainerInfo:
    return ContainerInfo(
        id=container.id,
        name=container.name,
        labels=dict(container.labels or {}),
    )


# =============================================================================
# Reconciler
# =============================================================================


class DockerReconciler:
    """Event-driven loop keeping Docker-discovered hosts in DNS."""

    def __init__(
        self,
        *,
        platform: ContainerPlatform,
        publisher: RecordPublisher,
        dns_target: str,
        logger: logging.Logger = logger,
    ):
        self.platform = platform
        self.publisher = publisher
        self.dns_target = dns_target
        self._log = logger

    def _publish_hosts(self, container: ContainerInfo, hosts: List[str]) -> int:
        written = 0
        for host in hosts:
            try:
                self.publisher.write_record(host, self.dns_target)
                written += 1
            except (RecordStoreError, requests.exceptions.RequestException) as e:
                self._log.error(
                    f"Failed to create DNS record for {host} (container {container.name}): {e}"
                )
        return written

    def sync_existing_containers(self) -> int:
        """Write records for every running container. Returns records written."""
        containers = self.platform.list_running()
        self._log.info(f"Syncing {len(containers)} existing container(s)")

        written = 0
        for container in containers:
            hosts = extract_hosts_from_labels(container.labels)
            if not hosts:
                continue
            self._log.debug(f"Found hosts in container {container.name}: {', '.join(hosts)}")
            written += self._publish_hosts(container, hosts)
        return written

    def handle_event(self, event: Mapping[str, Any]) -> int:
        """Process one Docker event; only container start events matter."""
        if event.get("Type") != "container" or event.get("Action") != "start":
            return 0

        container_id = event.get("id") or (event.get("Actor") or {}).get("ID")
        if not container_id:
            return 0

        try:
            container = self.platform.inspect(container_id)
        except (DockerException, requests.exceptions.RequestException) as e:
            self._log.error(f"Failed to inspect container {container_id}: {e}")
            return 0

        hosts = extract_hosts_from_labels(container.labels)
        if not hosts:
            return 0

        self._log.info(
            f"Processing container {container.name} for DNS records: {', '.join(hosts)}"
        )
        return self._publish_hosts(container, hosts)

    def run(self, stop_event: threading.Event) -> None:
        """Sync, then watch events until stop_event is set.

        Raises DockerStreamError if the event stream fails.
        """
        self._log.info(f"Starting {self.platform.name} event monitoring...")
        try:
            self.sync_existing_containers()
        except (DockerException, requests.exceptions.RequestException) as e:
            self._log.warning(f"Failed to sync existing containers: {e}")

        if stop_event.is_set():
            return

        try:
            stream = self.platform.events()
        except (DockerException, requests.exceptions.RequestException) as e:
            raise DockerStreamError(f"failed to open event stream: {e}") from e

        finished = threading.Event()
        closer = threading.Thread(
            target=_close_on_stop,
            args=(stream, stop_event, finished),
            name="docker-event-closer",
            daemon=True,
        )
        closer.start()

        self._log.info("Listening for Docker events...")
        try:
            events = iter(stream)
            while not stop_event.is_set():
                try:
                    event = next(events)
                except StopIteration:
                    break
                except Exception as e:
                    if stop_event.is_set():
                        return
                    self._log.error(f"Docker events stream error: {e}")
                    raise DockerStreamError(str(e)) from e
                self.handle_event(event)
        finally:
            finished.set()

        if not stop_event.is_set():
            self._log.error("Docker events stream closed unexpectedly")
            raise DockerStreamError("event stream closed")


def _close_on_stop(stream: EventStream, stop_event: threading.Event, finished: threading.Event) -> None:
    while not finished.is_set():
        if stop_event.wait(0.5):
            stream.close()
            return
