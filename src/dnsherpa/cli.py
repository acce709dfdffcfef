#!/usr/bin/env python3
"""dnsherpa - Automatic DNS management for Docker and Proxmox

Discovers hosts from Docker container labels (Traefik router rules) and from
Proxmox VE VMs and containers, and writes SkyDNS-style records into etcd for
CoreDNS to serve.

Environment variables:

    Agent:
        AGENT_MODE             "docker", "proxmox" or "hybrid" (default: docker)
        DNSHERPA_CONFIG_PATH   Optional YAML file with the same settings as
                               lower-case keys (default: /config/dnsherpa.yaml).
                               Environment variables take precedence.
                               Example config file:
                                 agent_mode: hybrid
                                 etcd_endpoints: "10.0.0.5:2379,10.0.0.6:2379"
                                 domain: home.lab
                                 proxmox_api_url: https://pve.home.lab:8006

    etcd:
        ETCD_ENDPOINTS         Comma-separated endpoints
                               (default: 172.16.0.221:2379,172.16.0.222:2379)
        ETCD_PREFIX            Key prefix (default: /skydns)
        ETCD_TLS               Use TLS (default: false)
        ETCD_CA_FILE           CA bundle used to verify etcd
        ETCD_CERT_FILE         Client certificate
        ETCD_KEY_FILE          Client key

    DNS:
        DNS_TARGET             Target for Docker records: an IP (A/AAAA) or a
                               hostname (CNAME). When unset, the host's
                               hostname is read from HOST_HOSTNAME_PATH.
        HOST_HOSTNAME_PATH     Mounted host /etc/hostname (default: /host/hostname)
        DOMAIN                 Domain appended to short names

    Proxmox:
        PROXMOX_API_URL        API base URL, e.g. https://pve:8006
        PROXMOX_TOKEN_ID       API token id (user@realm!token)
        PROXMOX_TOKEN_SECRET   API token secret
        PROXMOX_POLL_INTERVAL  Poll interval: 30s, 1m30s, 1h or seconds (default: 30s)
        PROXMOX_VERIFY_SSL     Verify the API certificate (default: false)
        PROXMOX_INTERFACE      Interface to read addresses from (default: eth0)
        PROXMOX_MULTI_IPV4     "first" (one IPv4, all IPv6) or "all" (default: first)

    Logging:
        LOG_LEVEL              debug, info, warning, error (default: info)
        LOG_FORMAT             text or json (default: text)
"""

from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from dnsherpa import get_version_info
from dnsherpa.docker_provider import DockerEngine, DockerReconciler
from dnsherpa.orchestrator import (
    AGENT_MODES,
    MODE_DOCKER,
    MODE_HYBRID,
    MODE_PROXMOX,
    ConfigError,
    Orchestrator,
)
from dnsherpa.proxmox_provider import (
    DEFAULT_INTERFACE,
    ProxmoxAPI,
    ProxmoxReconciler,
    ResourceHostResolver,
)
from dnsherpa.records import (
    ADDRESS_STRATEGIES,
    RECORD_TTL,
    EtcdRecordStore,
    RecordPublisher,
    RecordStore,
)

logger = logging.getLogger("dnsherpa")

DEFAULT_CONFIG_PATH = "/config/dnsherpa.yaml"
DEFAULT_HOSTNAME_PATH = "/host/hostname"

# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class Config:
    etcd_endpoints: Tuple[str, ...]
    etcd_prefix: str = "/skydns"
    etcd_tls: bool = False
    etcd_ca_file: str = ""
    etcd_cert_file: str = ""
    etcd_key_file: str = ""

    dns_target: str = ""
    domain: str = ""
    record_ttl: int = RECORD_TTL

    agent_mode: str = MODE_DOCKER

    proxmox_api_url: str = ""
    proxmox_token_id: str = ""
    proxmox_token_secret: str = ""
    proxmox_poll_interval: float = 30.0
    proxmox_verify_ssl: bool = False
    proxmox_interface: str = DEFAULT_INTERFACE
    proxmox_multi_ipv4: str = "first"

    @property
    def uses_docker(self) -> bool:
        return self.agent_mode in (MODE_DOCKER, MODE_HYBRID)

    @property
    def uses_proxmox(self) -> bool:
        return self.agent_mode in (MODE_PROXMOX, MODE_HYBRID)


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


_BARE_SECONDS_RE = re.compile(r"^\d+(?:\.\d+)?$")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def _parse_duration(value: Any) -> float:
    """Parse a duration such as '30s', '1m30s', '1h15m', '500ms' into seconds.

    A bare number is taken as seconds.
    """
    text = str(value).strip()
    if _BARE_SECONDS_RE.match(text):
        seconds = float(text)
    else:
        seconds = 0.0
        pos = 0
        for match in _DURATION_PART_RE.finditer(text):
            if match.start() != pos:
                break
            seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            pos = match.end()
        if not text or pos != len(text):
            raise ConfigError(f"Invalid duration: {value!r}")
    if seconds <= 0:
        raise ConfigError(f"Duration must be positive: {value!r}")
    return seconds


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load optional YAML settings; a missing file yields an empty dict."""
    path = Path(config_path)
    if not config_path or not path.is_file():
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {config_path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    return {str(k).lower(): v for k, v in data.items()}


def detect_dns_target(
    dns_target: str,
    hostname_path: str = DEFAULT_HOSTNAME_PATH,
    domain: str = "",
) -> str:
    """Decide the target used by every Docker-discovered record.

    Priority: DNS_TARGET, then the mounted host hostname (made fully
    qualified with DOMAIN when it is a short name).
    """
    target = (dns_target or "").strip()
    if target:
        logger.info(f"Using DNS_TARGET from environment: {target}")
        return target

    try:
        hostname = Path(hostname_path).read_text("utf-8").strip()
    except OSError as e:
        raise ConfigError(
            f"Cannot read {hostname_path} - mount the host's /etc/hostname with "
            f"-v /etc/hostname:{hostname_path}:ro or set DNS_TARGET ({e})"
        ) from e
    if not hostname:
        raise ConfigError(f"{hostname_path} is empty - the host's /etc/hostname appears to be empty")

    if "." in hostname:
        logger.info(f"Detected DNS target from {hostname_path}: {hostname}")
        return hostname

    if not domain:
        raise ConfigError(
            f"Host hostname '{hostname}' is not an FQDN and DOMAIN is not set. "
            "Please set DOMAIN=your-domain.com"
        )
    fqdn = f"{hostname}.{domain}"
    logger.info(f"Detected DNS target from hostname and domain: {fqdn}")
    return fqdn


def load_config(env: Optional[Mapping[str, str]] = None) -> Config:
    """Build the configuration from YAML defaults and environment variables."""
    env = os.environ if env is None else env
    file_settings = load_config_file(env.get("DNSHERPA_CONFIG_PATH", DEFAULT_CONFIG_PATH))

    def get(key: str, default: str = "") -> str:
        value = env.get(key.upper())
        if value:
            return value
        value = file_settings.get(key.lower())
        if value is None or value == "":
            return default
        if isinstance(value, list):
            return ",".join(str(v) for v in value)
        return str(value)

    agent_mode = get("AGENT_MODE", MODE_DOCKER).lower().strip()
    if agent_mode not in AGENT_MODES:
        raise ConfigError(f"Invalid AGENT_MODE: {agent_mode}. Use one of: {', '.join(AGENT_MODES)}")

    multi_ipv4 = get("PROXMOX_MULTI_IPV4", "first").lower().strip()
    if multi_ipv4 not in ADDRESS_STRATEGIES:
        raise ConfigError(
            f"Invalid PROXMOX_MULTI_IPV4: {multi_ipv4}. Use one of: {', '.join(ADDRESS_STRATEGIES)}"
        )

    domain = get("DOMAIN").strip()
    endpoints = tuple(
        e.strip() for e in get("ETCD_ENDPOINTS", "172.16.0.221:2379,172.16.0.222:2379").split(",") if e.strip()
    )

    dns_target = ""
    if agent_mode in (MODE_DOCKER, MODE_HYBRID):
        dns_target = detect_dns_target(
            get("DNS_TARGET"),
            hostname_path=get("HOST_HOSTNAME_PATH", DEFAULT_HOSTNAME_PATH),
            domain=domain,
        )

    return Config(
        etcd_endpoints=endpoints,
        etcd_prefix=get("ETCD_PREFIX", "/skydns"),
        etcd_tls=_parse_bool(get("ETCD_TLS", "false"), default=False),
        etcd_ca_file=get("ETCD_CA_FILE"),
        etcd_cert_file=get("ETCD_CERT_FILE"),
        etcd_key_file=get("ETCD_KEY_FILE"),
        dns_target=dns_target,
        domain=domain,
        agent_mode=agent_mode,
        proxmox_api_url=get("PROXMOX_API_URL").strip(),
        proxmox_token_id=get("PROXMOX_TOKEN_ID"),
        proxmox_token_secret=get("PROXMOX_TOKEN_SECRET"),
        proxmox_poll_interval=_parse_duration(get("PROXMOX_POLL_INTERVAL", "30s")),
        proxmox_verify_ssl=_parse_bool(get("PROXMOX_VERIFY_SSL", "false"), default=False),
        proxmox_interface=get("PROXMOX_INTERFACE", DEFAULT_INTERFACE).strip(),
        proxmox_multi_ipv4=multi_ipv4,
    )


def validate_config(config: Config) -> bool:
    """Validate configuration."""
    errors = []

    if not config.etcd_endpoints:
        errors.append("ETCD_ENDPOINTS must list at least one endpoint")
    if config.etcd_tls and bool(config.etcd_cert_file) != bool(config.etcd_key_file):
        errors.append("ETCD_CERT_FILE and ETCD_KEY_FILE must be set together")
    if config.uses_docker and not config.dns_target:
        errors.append(f"DNS_TARGET is required when AGENT_MODE={config.agent_mode}")

    if config.uses_proxmox:
        if not config.proxmox_api_url:
            logger.warning("Proxmox mode enabled but no API URL configured")
        elif not config.proxmox_token_id or not config.proxmox_token_secret:
            logger.warning("PROXMOX_TOKEN_ID/PROXMOX_TOKEN_SECRET not set. API calls will likely fail.")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


# =============================================================================
# Logging Setup
# =============================================================================


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        data: Dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            data["error"] = self.formatException(record.exc_info)
        return json.dumps(data)


def setup_logging(level: str = "info", fmt: str = "text") -> None:
    """Configure the root logger on stdout."""
    warnings: List[str] = []

    log_level = getattr(logging, level.upper(), None)
    if not isinstance(log_level, int):
        warnings.append(f"Invalid LOG_LEVEL '{level}', defaulting to 'info'")
        log_level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    if fmt.lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        if fmt.lower() != "text":
            warnings.append(f"Invalid LOG_FORMAT '{fmt}', defaulting to 'text'")
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        )

    logging.basicConfig(level=log_level, handlers=[handler], force=True)
    for warning in warnings:
        logger.warning(warning)


def show_startup_banner() -> None:
    info = get_version_info()
    logger.info(f"DNSherpa {info['version']} - Automatic DNS Management for Docker & Proxmox")
    details = f"python {info['python_version']}, {info['platform']}"
    if info["version"].startswith("dev") and info["git_commit"] != "unknown":
        details += f", commit {info['git_commit']} ({info['git_branch']})"
        if info["build_time"] != "unknown":
            details += f", built {info['build_time']}"
    logger.info(f"Application starting ({details})")


def log_configuration_summary(config: Config) -> None:
    """Log the active configuration without secrets."""
    logger.info(f"Agent mode: {config.agent_mode}")
    logger.info(f"etcd endpoints: {', '.join(config.etcd_endpoints)} (prefix {config.etcd_prefix}, tls {config.etcd_tls})")
    if config.uses_docker:
        logger.info(f"DNS target: {config.dns_target}")
    logger.info(f"Domain: {config.domain or '(none)'}")
    logger.info(f"Record TTL: {config.record_ttl}s")

    if config.uses_proxmox and config.proxmox_api_url:
        token_configured = bool(config.proxmox_token_id and config.proxmox_token_secret)
        logger.info(
            f"Proxmox: {config.proxmox_api_url} (verify_ssl {config.proxmox_verify_ssl}, "
            f"poll {config.proxmox_poll_interval:g}s, interface {config.proxmox_interface}, "
            f"multi_ipv4 {config.proxmox_multi_ipv4}, token configured {token_configured})"
        )


# =============================================================================
# Client Factories
# =============================================================================


def create_record_store(config: Config) -> EtcdRecordStore:
    return EtcdRecordStore(
        config.etcd_endpoints,
        use_tls=config.etcd_tls,
        ca_file=config.etcd_ca_file,
        cert_file=config.etcd_cert_file,
        key_file=config.etcd_key_file,
        logger=logging.getLogger("dnsherpa.etcd"),
    )


def create_record_publisher(config: Config, store: Optional[RecordStore] = None) -> RecordPublisher:
    return RecordPublisher(
        store or create_record_store(config),
        config.etcd_prefix,
        config.record_ttl,
        logger=logging.getLogger("dnsherpa.records"),
    )


def create_docker_reconciler(config: Config, publisher: RecordPublisher) -> DockerReconciler:
    return DockerReconciler(
        platform=DockerEngine(),
        publisher=publisher,
        dns_target=config.dns_target,
        logger=logging.getLogger("dnsherpa.docker"),
    )


def create_proxmox_reconciler(config: Config, publisher: RecordPublisher) -> ProxmoxReconciler:
    proxmox_logger = logging.getLogger("dnsherpa.proxmox")
    platform = None
    resolver = None
    if config.proxmox_api_url:
        platform = ProxmoxAPI(
            config.proxmox_api_url,
            config.proxmox_token_id,
            config.proxmox_token_secret,
            verify_ssl=config.proxmox_verify_ssl,
        )
        proxmox_logger.info(f"Connecting to Proxmox API at {platform.base}")
        resolver = ResourceHostResolver(
            platform,
            domain=config.domain,
            default_interface=config.proxmox_interface,
            strategy=config.proxmox_multi_ipv4,
            logger=proxmox_logger,
        )
    return ProxmoxReconciler(
        platform=platform,
        resolver=resolver,
        publisher=publisher,
        poll_interval_seconds=config.proxmox_poll_interval,
        logger=proxmox_logger,
    )


def create_reconcilers(
    config: Config, store: RecordStore
) -> Tuple[Optional[DockerReconciler], Optional[ProxmoxReconciler]]:
    """Build the reconcilers for the configured mode.

    In hybrid mode each reconciler has its own etcd store and HTTP session.
    """
    docker_reconciler = None
    proxmox_reconciler = None
    if config.uses_docker:
        docker_reconciler = create_docker_reconciler(config, create_record_publisher(config, store))
    if config.uses_proxmox:
        proxmox_store = store if docker_reconciler is None else create_record_store(config)
        proxmox_reconciler = create_proxmox_reconciler(
            config, create_record_publisher(config, proxmox_store)
        )
    return docker_reconciler, proxmox_reconciler


def close_clients(
    orchestrator: Orchestrator,
    docker_reconciler: Optional[DockerReconciler],
    proxmox_reconciler: Optional[ProxmoxReconciler],
) -> bool:
    """Close platform and store clients once every reconciler has stopped.

    Returns False, leaving the clients open, when a worker is still running.
    """
    alive = orchestrator.alive_workers()
    if alive:
        logger.warning(
            f"Forced shutdown: {', '.join(alive)} reconciler(s) still running, leaving clients open"
        )
        return False

    stores: List[RecordStore] = []
    for reconciler in (docker_reconciler, proxmox_reconciler):
        if reconciler is None:
            continue
        if reconciler.platform is not None:
            reconciler.platform.close()
        if not any(s is reconciler.publisher.store for s in stores):
            stores.append(reconciler.publisher.store)
    for store in stores:
        store.close()
    return True


# =============================================================================
# Main
# =============================================================================


def main():
    """Main entry point."""
    setup_logging(os.getenv("LOG_LEVEL", "info"), os.getenv("LOG_FORMAT", "text"))
    show_startup_banner()

    try:
        config = load_config()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    if not validate_config(config):
        logger.error("Configuration validation failed")
        sys.exit(1)
    log_configuration_summary(config)

    store = create_record_store(config)
    if not store.test_connection():
        logger.error(f"Cannot connect to {store.name}. Exiting.")
        sys.exit(1)

    try:
        docker_reconciler, proxmox_reconciler = create_reconcilers(config, store)
        orchestrator = Orchestrator(
            config.agent_mode, docker=docker_reconciler, proxmox=proxmox_reconciler
        )
    except Exception as e:
        logger.error(f"Failed to initialize: {e}", exc_info=True)
        sys.exit(1)

    def _handle_signal(signum, frame):
        logger.info("Shutting down gracefully...")
        orchestrator.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        orchestrator.run()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        close_clients(orchestrator, docker_reconciler, proxmox_reconciler)

    logger.info("dnsherpa stopped")


if __name__ == "__main__":
    main()
