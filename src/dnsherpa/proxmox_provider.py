"""Proxmox VE discovery: running VMs and containers to DNS records.

Resources can be steered with tags (entries separated by ``;``):

    dnsherpa-skip                   never announce this resource
    dnsherpa-ip:<ip>[,<ip>...]      announce exactly these addresses
    dnsherpa-interface:<name>       read addresses from this interface

Without an explicit address tag, addresses come from live interface data:
the QEMU guest agent for VMs and the interface listing for LXC containers.
"""

from __future__ import annotations

import ipaddress
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests
import urllib3

from dnsherpa.records import (
    STRATEGY_FIRST,
    RecordPublisher,
    ResolvedAddress,
    apply_address_strategy,
    classify_address,
)

logger = logging.getLogger(__name__)

TAG_SKIP = "dnsherpa-skip"
TAG_IP = "dnsherpa-ip"
TAG_INTERFACE = "dnsherpa-interface"

DEFAULT_INTERFACE = "eth0"
KIND_QEMU = "qemu"
KIND_LXC = "lxc"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class NodeInfo:
    name: str
    status: str


@dataclass(frozen=True)
class VMResource:
    """A QEMU VM or LXC container as listed on a node."""

    name: str
    kind: str
    status: str
    node: str
    vmid: int
    tags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class NetworkInterface:
    name: str
    addresses: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class HostResolution:
    hostname: str
    addresses: List[ResolvedAddress]


# =============================================================================
# Tag Helpers
# =============================================================================


def parse_tags(raw: Optional[str]) -> Tuple[str, ...]:
    """Split a Proxmox tag string into trimmed, non-empty entries."""
    if not raw:
        return ()
    return tuple(t.strip() for t in raw.split(";") if t.strip())


def has_tag(tags: Sequence[str], tag: str) -> bool:
    return any(t.strip() == tag for t in tags)


def get_tag_value(tags: Sequence[str], prefix: str) -> str:
    """Return the value of the first ``prefix:value`` tag, or an empty string."""
    marker = prefix + ":"
    for tag in tags:
        tag = tag.strip()
        if tag.startswith(marker):
            return tag[len(marker) :]
    return ""


def generate_hostname(name: str, domain: str) -> str:
    """Append the domain to short names; dotted names are used as-is."""
    name = name.rstrip(".")
    if "." in name or not domain:
        return name
    return f"{name}.{domain}"


def _strip_prefix_length(value: str) -> str:
    return value.split("/", 1)[0].strip()


def _is_announceable(value: str) -> bool:
    try:
        ip = ipaddress.ip_address(value)
    except ValueError:
        return False
    return not (ip.is_loopback or ip.is_link_local)


# =============================================================================
# Virtualization Platform Interface and Implementations
# =============================================================================


class VirtualizationPlatform(ABC):
    """Abstract virtualization cluster."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the platform name for logging."""
        pass

    @abstractmethod
    def version(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    def list_nodes(self) -> List[NodeInfo]:
        pass

    @abstractmethod
    def list_resources(self, node: str, kind: str) -> List[VMResource]:
        """List VMs (kind=qemu) or containers (kind=lxc) on a node."""
        pass

    @abstractmethod
    def interfaces(self, resource: VMResource) -> List[NetworkInterface]:
        """Live network interfaces of a resource.

        Raises requests.exceptions.RequestException when live data is
        unavailable (for example when the guest agent is not running).
        """
        pass

    def close(self) -> None:
        pass


class ProxmoxAPI(VirtualizationPlatform):
    """Proxmox VE REST API client using an API token."""

    def __init__(
        self,
        url: str,
        token_id: str,
        token_secret: str,
        *,
        verify_ssl: bool = False,
        timeout_seconds: float = 10.0,
    ):
        self.base = normalize_api_url(url)
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers["Authorization"] = f"PVEAPIToken={token_id}={token_secret}"
        self._session.verify = verify_ssl
        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @property
    def name(self) -> str:
        return "Proxmox"

    def _get(self, path: str) -> Any:
        response = self._session.get(f"{self.base}{path}", timeout=self._timeout)
        response.raise_for_status()
        return response.json().get("data")

    def version(self) -> Dict[str, Any]:
        return self._get("/version") or {}

    def list_nodes(self) -> List[NodeInfo]:
        nodes = []
        for item in self._get("/nodes") or []:
            if not isinstance(item, dict) or not item.get("node"):
                continue
            nodes.append(NodeInfo(name=item["node"], status=str(item.get("status") or "")))
        return nodes

    def list_resources(self, node: str, kind: str) -> List[VMResource]:
        resources = []
        for item in self._get(f"/nodes/{node}/{kind}") or []:
            if not isinstance(item, dict) or "vmid" not in item:
                continue
            resources.append(
                VMResource(
                    name=str(item.get("name") or ""),
                    kind=kind,
                    status=str(item.get("status") or ""),
                    node=node,
                    vmid=int(item["vmid"]),
                    tags=parse_tags(item.get("tags")),
                )
            )
        return resources

    def interfaces(self, resource: VMResource) -> List[NetworkInterface]:
        base = f"/nodes/{resource.node}/{resource.kind}/{resource.vmid}"
        if resource.kind == KIND_QEMU:
            data = self._get(f"{base}/agent/network-get-interfaces") or {}
            return [_qemu_interface(i) for i in data.get("result") or [] if isinstance(i, dict)]
        return [_lxc_interface(i) for i in self._get(f"{base}/interfaces") or [] if isinstance(i, dict)]

    def close(self) -> None:
        self._session.close()


def normalize_api_url(url: str) -> str:
    url = url.strip().rstrip("/")
    if not url.endswith("/api2/json"):
        url = f"{url}/api2/json"
    return url


def _qemu_interface(item: Dict[str, Any]) -> NetworkInterface:
    addresses = tuple(
        str(a["ip-address"])
        for a in item.get("ip-addresses") or []
        if isinstance(a, dict) and a.get("ip-address")
    )
    return NetworkInterface(name=str(item.get("name") or ""), addresses=addresses)


def _lxc_interface(item: Dict[str, Any]) -> NetworkInterface:
    addresses: List[str] = []
    for key in ("inet", "inet6"):
        if item.get(key):
            addresses.append(_strip_prefix_length(str(item[key])))
    # Newer releases also return guest-agent style address lists.
    for a in item.get("ip-addresses") or []:
        if isinstance(a, dict) and a.get("ip-address"):
            value = str(a["ip-address"])
            if value not in addresses:
                addresses.append(value)
    return NetworkInterface(name=str(item.get("name") or ""), addresses=tuple(addresses))


# =============================================================================
# Resource Host Resolver
# =============================================================================


class ResourceHostResolver:
    """Resolves the hostname and addresses to announce for one resource."""

    def __init__(
        self,
        platform: VirtualizationPlatform,
        *,
        domain: str = "",
        default_interface: str = DEFAULT_INTERFACE,
        strategy: str = STRATEGY_FIRST,
        logger: logging.Logger = logger,
    ):
        self.platform = platform
        self.domain = domain
        self.default_interface = default_interface or DEFAULT_INTERFACE
        self.strategy = strategy
        self._log = logger

    def resolve(self, resource: VMResource) -> Optional[HostResolution]:
        """Return None when the resource opts out via the skip tag."""
        if has_tag(resource.tags, TAG_SKIP):
            self._log.info(f"Skipping {resource.name} due to {TAG_SKIP} tag")
            return None
        hostname = generate_hostname(resource.name, self.domain)
        return HostResolution(hostname=hostname, addresses=self.resolve_addresses(resource))

    def resolve_addresses(self, resource: VMResource) -> List[ResolvedAddress]:
        explicit = get_tag_value(resource.tags, TAG_IP)
        if explicit:
            addresses = [classify_address(v) for v in explicit.split(",")]
            return [a for a in addresses if a is not None]

        interface_name = get_tag_value(resource.tags, TAG_INTERFACE) or self.default_interface
        try:
            interfaces = self.platform.interfaces(resource)
        except requests.exceptions.RequestException as e:
            self._log.debug(
                f"Live interface data unavailable for {resource.name}, falling back to config: {e}"
            )
            return self.addresses_from_static_config(resource)

        values: List[str] = []
        for interface in interfaces:
            if interface.name != interface_name:
                continue
            values.extend(v for v in interface.addresses if _is_announceable(v))
        self._log.debug(
            f"{resource.name}: {len(values)} address(es) on interface {interface_name}"
        )
        return apply_address_strategy(values, self.strategy)

    def addresses_from_static_config(self, resource: VMResource) -> List[ResolvedAddress]:
        """Static network configuration is not supported yet; yields nothing."""
        self._log.debug(
            f"Unable to determine IP for {resource.name} from static config (not supported yet)"
        )
        return []


# =============================================================================
# Reconciler
# =============================================================================


class ProxmoxReconciler:
    """Poll-driven loop keeping Proxmox-discovered hosts in DNS."""

    def __init__(
        self,
        *,
        platform: Optional[VirtualizationPlatform],
        resolver: Optional[ResourceHostResolver],
        publisher: RecordPublisher,
        poll_interval_seconds: float = 30.0,
        logger: logging.Logger = logger,
    ):
        self.platform = platform
        self.resolver = resolver
        self.publisher = publisher
        self.poll_interval = poll_interval_seconds
        self._log = logger

    def test_connection(self) -> bool:
        """Log API version and node count; returns False if the API is unreachable."""
        self._log.info("Testing Proxmox API connection...")
        try:
            version = self.platform.version()
        except requests.exceptions.RequestException as e:
            self._log.warning(f"Proxmox API connection test failed: {e}")
            return False
        self._log.info(
            f"Proxmox API connection successful (version {version.get('version', 'unknown')}, "
            f"release {version.get('release', 'unknown')})"
        )
        try:
            nodes = self.platform.list_nodes()
            self._log.info(f"Found {len(nodes)} node(s) in cluster")
            for node in nodes:
                self._log.debug(f"Cluster node {node.name}: {node.status}")
        except requests.exceptions.RequestException as e:
            self._log.warning(f"Cannot list nodes: {e}")
        return True

    def process_resource(self, resource: VMResource) -> bool:
        """Resolve and publish one resource. Returns True if records were written."""
        resolution = self.resolver.resolve(resource)
        if resolution is None:
            return False
        if not resolution.addresses:
            self._log.warning(f"No IPs found for {resource.kind} {resource.name}")
            return False
        self.publisher.write_records(resolution.hostname, resolution.addresses)
        return True

    def sync_all_resources(self) -> Tuple[int, int]:
        """Run one pass over the cluster. Returns (processed, skipped)."""
        self._log.info("Syncing Proxmox VMs and containers...")
        nodes = self.platform.list_nodes()

        processed = 0
        skipped = 0
        for node in nodes:
            if node.status != "online":
                self._log.warning(f"Skipping offline node {node.name}")
                continue

            for kind in (KIND_QEMU, KIND_LXC):
                try:
                    resources = self.platform.list_resources(node.name, kind)
                except Exception as e:
                    self._log.error(f"Failed to list {kind} resources on node {node.name}: {e}")
                    continue
                self._log.info(f"Found {len(resources)} {kind} resource(s) on node {node.name}")

                for resource in resources:
                    if resource.status != "running":
                        self._log.debug(f"Skipping non-running {kind} {resource.name} ({resource.status})")
                        skipped += 1
                        continue
                    try:
                        if self.process_resource(resource):
                            processed += 1
                    except Exception as e:
                        self._log.error(f"Error processing {kind} {resource.name}: {e}")

        self._log.info(f"Completed Proxmox resource sync: {processed} processed, {skipped} skipped")
        return processed, skipped

    def run(self, stop_event: threading.Event) -> None:
        """Initial pass, then one pass per poll interval until stop_event is set."""
        if self.platform is None:
            self._log.info("Proxmox client not configured, skipping monitoring")
            stop_event.wait()
            return

        self._log.info(f"Starting Proxmox monitoring (poll interval {self.poll_interval}s)")
        self.test_connection()

        try:
            self.sync_all_resources()
        except Exception as e:
            self._log.warning(f"Initial sync failed: {e}")

        while not stop_event.wait(self.poll_interval):
            try:
                self.sync_all_resources()
            except Exception as e:
                self._log.error(f"Error during Proxmox sync: {e}", exc_info=True)
