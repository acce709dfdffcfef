"""DNS record synthesis and the etcd record store.

Records are written in the SkyDNS layout read by CoreDNS's etcd plugin:
domain labels in reverse order form the key path below a fixed prefix, and
the value is a small JSON document holding the answer and its TTL.
"""

from __future__ import annotations

import base64
import ipaddress
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import requests

logger = logging.getLogger(__name__)

RECORD_TTL = 300

STRATEGY_FIRST = "first"
STRATEGY_ALL = "all"
ADDRESS_STRATEGIES = (STRATEGY_FIRST, STRATEGY_ALL)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ResolvedAddress:
    """An IP address discovered for a host."""

    value: str
    family: int

    @property
    def record_type(self) -> str:
        return "A" if self.family == 4 else "AAAA"


@dataclass(frozen=True)
class DNSRecord:
    """Value stored at a key path.

    ``host`` is either a target hostname (CNAME) or an IP literal (A/AAAA).
    """

    host: str
    ttl: int = RECORD_TTL

    def to_json(self) -> str:
        return json.dumps({"host": self.host, "ttl": self.ttl}, separators=(",", ":"))


# =============================================================================
# Address Classification
# =============================================================================


def classify_address(value: str) -> Optional[ResolvedAddress]:
    """Parse an IP literal; anything unparseable yields None."""
    try:
        ip = ipaddress.ip_address(value.strip())
    except (ValueError, AttributeError):
        return None
    return ResolvedAddress(value=str(ip), family=ip.version)


def classify_target(target: str) -> str:
    """Return the record type implied by a DNS target: A, AAAA or CNAME."""
    address = classify_address(target)
    if address is None:
        return "CNAME"
    return address.record_type


def apply_address_strategy(values: Iterable[str], strategy: str) -> List[ResolvedAddress]:
    """Select addresses according to the multi-address strategy.

    ``all`` keeps every valid address. ``first`` keeps only the first IPv4
    address but every IPv6 address. Encounter order is preserved either way
    and invalid entries are dropped.
    """
    result: List[ResolvedAddress] = []
    found_ipv4 = False
    for value in values:
        address = classify_address(value)
        if address is None:
            continue
        if strategy != STRATEGY_ALL and address.family == 4:
            if found_ipv4:
                continue
            found_ipv4 = True
        result.append(address)
    return result


# =============================================================================
# Key Paths
# =============================================================================


def build_key_path(prefix: str, hostname: str, suffix: Optional[str] = None) -> str:
    """Build the reverse-domain key for a hostname.

    >>> build_key_path("/skydns", "api.example.com")
    '/skydns/com/example/api'
    >>> build_key_path("/skydns", "api.example.com", "a1")
    '/skydns/com/example/api/a1'
    """
    labels = hostname.split(".")
    labels.reverse()
    key = f"{prefix.rstrip('/')}/{'/'.join(labels)}"
    if suffix:
        key = f"{key}/{suffix}"
    return key


# =============================================================================
# Record Store Interface and Implementations
# =============================================================================


class RecordStoreError(Exception):
    """Raised when a record could not be written to any store endpoint."""


class RecordStore(ABC):
    """Something that can put a key."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the store name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Check that the store is reachable."""
        pass

    @abstractmethod
    def put(self, key: str, value: str) -> None:
        """Create or overwrite a key. Raises RecordStoreError on failure."""
        pass

    def close(self) -> None:
        pass


class EtcdRecordStore(RecordStore):
    """etcd v3 store accessed through its JSON gRPC gateway."""

    def __init__(
        self,
        endpoints: Sequence[str],
        *,
        use_tls: bool = False,
        ca_file: str = "",
        cert_file: str = "",
        key_file: str = "",
        timeout_seconds: float = 5.0,
        logger: logging.Logger = logger,
    ):
        scheme = "https" if use_tls else "http"
        self._endpoints = [_endpoint_url(e, scheme) for e in endpoints if e.strip()]
        self._timeout = timeout_seconds
        self._log = logger
        self._session = requests.Session()
        if use_tls:
            self._session.verify = ca_file or True
            if cert_file and key_file:
                self._session.cert = (cert_file, key_file)

    @property
    def name(self) -> str:
        return "etcd"

    @property
    def endpoints(self) -> List[str]:
        return list(self._endpoints)

    def test_connection(self) -> bool:
        for endpoint in self._endpoints:
            try:
                response = self._session.post(
                    f"{endpoint}/v3/maintenance/status", json={}, timeout=self._timeout
                )
                response.raise_for_status()
                version = response.json().get("version", "unknown")
                self._log.info(f"{self.name} connection successful ({endpoint}, version {version})")
                return True
            except (requests.exceptions.RequestException, ValueError) as e:
                self._log.warning(f"{self.name} endpoint {endpoint} unreachable: {e}")
        self._log.error(f"Failed to connect to any {self.name} endpoint")
        return False

    def put(self, key: str, value: str) -> None:
        payload = {"key": _b64(key), "value": _b64(value)}
        last_error: Optional[Exception] = None
        for endpoint in self._endpoints:
            try:
                response = self._session.post(
                    f"{endpoint}/v3/kv/put", json=payload, timeout=self._timeout
                )
                response.raise_for_status()
                return
            except requests.exceptions.RequestException as e:
                self._log.debug(f"Put {key} failed on {endpoint}: {e}")
                last_error = e
        raise RecordStoreError(f"failed to put {key}: {last_error or 'no endpoints configured'}")

    def close(self) -> None:
        self._session.close()


def _endpoint_url(endpoint: str, scheme: str) -> str:
    endpoint = endpoint.strip().rstrip("/")
    if "://" in endpoint:
        return endpoint
    return f"{scheme}://{endpoint}"


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


# =============================================================================
# Record Publisher
# =============================================================================


class RecordPublisher:
    """Turns hostnames and answers into keyed records and writes them."""

    def __init__(
        self,
        store: RecordStore,
        prefix: str,
        ttl: int = RECORD_TTL,
        logger: logging.Logger = logger,
    ):
        self.store = store
        self.prefix = prefix
        self.ttl = ttl
        self._log = logger

    def write_record(self, hostname: str, target: str) -> str:
        """Write a single record for hostname pointing at target.

        Returns the record type that the target implies.
        """
        record_type = classify_target(target)
        key = build_key_path(self.prefix, hostname)
        self._log.info(f"Creating DNS record: {hostname} -> {target} ({record_type})")
        self.store.put(key, DNSRecord(host=target, ttl=self.ttl).to_json())
        return record_type

    def write_records(
        self, hostname: str, addresses: Sequence[ResolvedAddress]
    ) -> List[Tuple[str, str]]:
        """Write one suffixed record per address (a1, a2, ..., aaaa1, ...).

        Stops at the first failed write and raises RecordStoreError.
        """
        ipv4_count = 0
        ipv6_count = 0
        created: List[Tuple[str, str]] = []
        for address in addresses:
            if address.family == 4:
                ipv4_count += 1
                suffix = f"a{ipv4_count}"
            else:
                ipv6_count += 1
                suffix = f"aaaa{ipv6_count}"
            key = build_key_path(self.prefix, hostname, suffix)
            self.store.put(key, DNSRecord(host=address.value, ttl=self.ttl).to_json())
            created.append((address.record_type, address.value))
            self._log.debug(f"Created DNS record: {hostname} -> {address.value} ({address.record_type})")

        if created:
            summary = ", ".join(f"{t}->{v}" for t, v in created)
            self._log.info(f"DNS records created for {hostname}: {summary}")
        return created
