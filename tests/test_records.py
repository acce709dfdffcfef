"""Unit tests for record synthesis and the etcd record store.

Tests cover:
- Address classification and the multi-address strategy
- Reverse-domain key paths
- Record JSON encoding
- RecordPublisher key suffixing
- EtcdRecordStore HTTP calls
"""

import base64
import json
from typing import Dict, List, Tuple
from unittest.mock import MagicMock, patch

import pytest
import requests

from dnsherpa.records import (
    DNSRecord,
    EtcdRecordStore,
    RecordPublisher,
    RecordStore,
    RecordStoreError,
    ResolvedAddress,
    apply_address_strategy,
    build_key_path,
    classify_address,
    classify_target,
)

# =============================================================================
# Mock Record Store
# =============================================================================


class MockRecordStore(RecordStore):
    """In-memory store with call tracking."""

    def __init__(self, failing_keys: Tuple[str, ...] = ()):
        self.data: Dict[str, str] = {}
        self.put_calls: List[Tuple[str, str]] = []
        self._failing_keys = failing_keys

    @property
    def name(self) -> str:
        return "MockStore"

    def test_connection(self) -> bool:
        return True

    def put(self, key: str, value: str) -> None:
        self.put_calls.append((key, value))
        if key in self._failing_keys:
            raise RecordStoreError(f"failed to put {key}")
        self.data[key] = value


# =============================================================================
# Address Classification
# =============================================================================


def test_classify_address_ipv4_and_ipv6() -> None:
    assert classify_address("10.0.0.1") == ResolvedAddress("10.0.0.1", 4)
    assert classify_address("2001:db8::1") == ResolvedAddress("2001:db8::1", 6)


def test_classify_address_invalid_returns_none() -> None:
    assert classify_address("not-an-ip") is None
    assert classify_address("") is None
    assert classify_address("10.0.0.256") is None


def test_classify_target() -> None:
    assert classify_target("192.0.2.10") == "A"
    assert classify_target("2001:db8::10") == "AAAA"
    assert classify_target("docker01.home.lab") == "CNAME"


def test_strategy_first_keeps_one_ipv4_and_all_ipv6() -> None:
    values = ["10.0.0.1", "10.0.0.2", "2001:db8::1", "2001:db8::2"]
    result = apply_address_strategy(values, "first")
    assert [a.value for a in result] == ["10.0.0.1", "2001:db8::1", "2001:db8::2"]


def test_strategy_all_keeps_everything_in_order() -> None:
    values = ["2001:db8::1", "10.0.0.1", "10.0.0.2", "2001:db8::2"]
    result = apply_address_strategy(values, "all")
    assert [a.value for a in result] == ["2001:db8::1", "10.0.0.1", "10.0.0.2", "2001:db8::2"]


def test_strategy_drops_unparseable_entries_silently() -> None:
    result = apply_address_strategy(["garbage", "10.0.0.1", "", "10.0.0.300"], "all")
    assert [a.value for a in result] == ["10.0.0.1"]


def test_strategy_first_preserves_relative_order_with_ipv6_first() -> None:
    result = apply_address_strategy(["2001:db8::9", "10.0.0.7", "10.0.0.8"], "first")
    assert [a.value for a in result] == ["2001:db8::9", "10.0.0.7"]


# =============================================================================
# Key Paths
# =============================================================================


def test_build_key_path_reverses_labels() -> None:
    assert build_key_path("/skydns", "api.example.com") == "/skydns/com/example/api"


def test_build_key_path_with_suffix() -> None:
    assert build_key_path("/skydns", "api.example.com", "aaaa2") == "/skydns/com/example/api/aaaa2"


def test_build_key_path_short_name() -> None:
    assert build_key_path("/skydns", "web-server") == "/skydns/web-server"


def test_build_key_path_does_not_double_trailing_slash() -> None:
    assert build_key_path("/skydns/", "a.b") == "/skydns/b/a"


@pytest.mark.parametrize(
    "hostname",
    ["api.example.com", "web-server", "a.b.c.d.e.home.lab", "x.io"],
)
def test_build_key_path_reversal_reconstructs_hostname(hostname: str) -> None:
    path = build_key_path("/skydns", hostname)
    labels = path[len("/skydns/") :].split("/")
    assert ".".join(reversed(labels)) == hostname


def test_build_key_path_is_deterministic() -> None:
    assert build_key_path("/skydns", "app.home.lab") == build_key_path("/skydns", "app.home.lab")


# =============================================================================
# Record Encoding
# =============================================================================


def test_dns_record_json_is_compact() -> None:
    assert DNSRecord(host="10.0.0.1").to_json() == '{"host":"10.0.0.1","ttl":300}'


# =============================================================================
# Record Publisher
# =============================================================================


def test_write_record_uses_unsuffixed_key() -> None:
    store = MockRecordStore()
    publisher = RecordPublisher(store, "/skydns")

    record_type = publisher.write_record("app.example.com", "docker01.example.com")

    assert record_type == "CNAME"
    assert store.data == {
        "/skydns/com/example/app": '{"host":"docker01.example.com","ttl":300}'
    }


def test_write_record_with_ip_target_has_same_shape() -> None:
    store = MockRecordStore()
    publisher = RecordPublisher(store, "/skydns")

    assert publisher.write_record("app.example.com", "192.0.2.1") == "A"
    assert publisher.write_record("v6.example.com", "2001:db8::1") == "AAAA"

    assert json.loads(store.data["/skydns/com/example/app"]) == {"host": "192.0.2.1", "ttl": 300}
    assert json.loads(store.data["/skydns/com/example/v6"]) == {"host": "2001:db8::1", "ttl": 300}


def test_write_records_suffixes_per_family() -> None:
    store = MockRecordStore()
    publisher = RecordPublisher(store, "/skydns")
    addresses = apply_address_strategy(
        ["10.0.0.1", "2001:db8::1", "10.0.0.2", "2001:db8::2"], "all"
    )

    created = publisher.write_records("vm.home.lab", addresses)

    assert [k for k, _ in store.put_calls] == [
        "/skydns/lab/home/vm/a1",
        "/skydns/lab/home/vm/aaaa1",
        "/skydns/lab/home/vm/a2",
        "/skydns/lab/home/vm/aaaa2",
    ]
    assert created == [
        ("A", "10.0.0.1"),
        ("AAAA", "2001:db8::1"),
        ("A", "10.0.0.2"),
        ("AAAA", "2001:db8::2"),
    ]
    assert store.data["/skydns/lab/home/vm/aaaa2"] == '{"host":"2001:db8::2","ttl":300}'


def test_write_records_stops_on_first_failure() -> None:
    store = MockRecordStore(failing_keys=("/skydns/lab/home/vm/a1",))
    publisher = RecordPublisher(store, "/skydns")
    addresses = apply_address_strategy(["10.0.0.1", "2001:db8::1"], "all")

    with pytest.raises(RecordStoreError):
        publisher.write_records("vm.home.lab", addresses)

    assert len(store.put_calls) == 1


# =============================================================================
# Etcd Record Store
# =============================================================================


def _b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


class TestEtcdRecordStore:
    """Tests for the etcd JSON gateway client."""

    def test_endpoints_get_scheme(self) -> None:
        store = EtcdRecordStore(["10.0.0.5:2379", "https://etcd2:2379/", " "])
        assert store.endpoints == ["http://10.0.0.5:2379", "https://etcd2:2379"]

    def test_tls_endpoints_use_https_and_client_cert(self) -> None:
        store = EtcdRecordStore(
            ["10.0.0.5:2379"],
            use_tls=True,
            ca_file="/certs/ca.pem",
            cert_file="/certs/client.pem",
            key_file="/certs/client-key.pem",
        )
        assert store.endpoints == ["https://10.0.0.5:2379"]
        assert store._session.verify == "/certs/ca.pem"
        assert store._session.cert == ("/certs/client.pem", "/certs/client-key.pem")

    def test_put_posts_base64_key_and_value(self) -> None:
        store = EtcdRecordStore(["10.0.0.5:2379"])

        with patch.object(store._session, "post") as mock_post:
            mock_response = MagicMock()
            mock_response.raise_for_status = MagicMock()
            mock_post.return_value = mock_response

            store.put("/skydns/com/example/app", '{"host":"10.0.0.1","ttl":300}')

            mock_post.assert_called_once_with(
                "http://10.0.0.5:2379/v3/kv/put",
                json={
                    "key": _b64("/skydns/com/example/app"),
                    "value": _b64('{"host":"10.0.0.1","ttl":300}'),
                },
                timeout=5.0,
            )

    def test_put_falls_back_to_next_endpoint(self) -> None:
        store = EtcdRecordStore(["etcd1:2379", "etcd2:2379"])

        ok_response = MagicMock()
        ok_response.raise_for_status = MagicMock()

        with patch.object(store._session, "post") as mock_post:
            mock_post.side_effect = [
                requests.exceptions.ConnectionError("Connection refused"),
                ok_response,
            ]

            store.put("/skydns/a", "{}")

            assert mock_post.call_count == 2
            assert mock_post.call_args_list[1].args[0] == "http://etcd2:2379/v3/kv/put"

    def test_put_raises_when_all_endpoints_fail(self) -> None:
        store = EtcdRecordStore(["etcd1:2379", "etcd2:2379"])

        with patch.object(store._session, "post") as mock_post:
            mock_post.side_effect = requests.exceptions.ConnectionError("Connection refused")

            with pytest.raises(RecordStoreError):
                store.put("/skydns/a", "{}")

    def test_test_connection_success(self) -> None:
        store = EtcdRecordStore(["etcd1:2379"])

        with patch.object(store._session, "post") as mock_post:
            mock_response = MagicMock()
            mock_response.raise_for_status = MagicMock()
            mock_response.json.return_value = {"version": "3.5.9"}
            mock_post.return_value = mock_response

            assert store.test_connection() is True
            mock_post.assert_called_once_with(
                "http://etcd1:2379/v3/maintenance/status", json={}, timeout=5.0
            )

    def test_test_connection_failure(self) -> None:
        store = EtcdRecordStore(["etcd1:2379"])

        with patch.object(store._session, "post") as mock_post:
            mock_post.side_effect = requests.exceptions.ConnectionError("Connection refused")

            assert store.test_connection() is False
