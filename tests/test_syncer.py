"""Unit tests for the apply engine and the trigger dispatcher.

Tests the reconciliation passes end to end against in-memory provider and
registry fakes, ensuring the right remote calls and status callbacks happen.
"""

import logging
import re
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytest

from gandi_dns.providers import (
    DNSProvider,
    NotFoundError,
    ProviderError,
    RegistryError,
    ResourceRegistry,
    TransportError,
)
from gandi_dns.records import CanonicalRecord, DesiredRecord, Resource
from gandi_dns.sync import (
    Action,
    Applier,
    ApplyError,
    ChangeEntry,
    Dispatcher,
    PeriodicTick,
    ReconcileContext,
    ResourceChanged,
    Terminate,
    event_from_message,
)

DOMAIN = "example.com"

# =============================================================================
# Fake DNS Provider
# =============================================================================


class FakeDNSProvider(DNSProvider):
    """In-memory DNS provider with call tracking."""

    def __init__(
        self,
        initial_records: Optional[List[CanonicalRecord]] = None,
        failing_names: Optional[Set[str]] = None,
        list_error: Optional[ProviderError] = None,
        get_error: Optional[ProviderError] = None,
    ):
        self._records: Dict[Tuple[str, str], CanonicalRecord] = {}
        self.failing_names = failing_names or set()
        self.list_error = list_error
        self.get_error = get_error
        self.create_calls: List[Tuple[str, str, int, Tuple[str, ...]]] = []
        self.change_calls: List[CanonicalRecord] = []
        self.delete_calls: List[Tuple[str, str]] = []

        for record in initial_records or []:
            self._records[self._key(record.name, record.type)] = record

    @staticmethod
    def _key(name: str, record_type: str) -> Tuple[str, str]:
        return (name.lower(), record_type.upper())

    def _check(self, name: str) -> None:
        if name in self.failing_names:
            raise ProviderError(f"Refusing to touch {name}")

    @property
    def name(self) -> str:
        return "FakeDNS"

    def get_domain(self, domain: str) -> dict:
        return {"fqdn": domain}

    def get_record(self, domain: str, name: str, record_type: str) -> CanonicalRecord:
        if self.get_error:
            raise self.get_error
        try:
            return self._records[self._key(name, record_type)]
        except KeyError:
            raise NotFoundError("Can't find the DNS record") from None

    def list_records(self, domain: str) -> List[CanonicalRecord]:
        if self.list_error:
            raise self.list_error
        return list(self._records.values())

    def create_record(
        self, domain: str, name: str, record_type: str, ttl: int, values: Sequence[str]
    ) -> None:
        self.create_calls.append((name, record_type, ttl, tuple(values)))
        self._check(name)
        self._records[self._key(name, record_type)] = CanonicalRecord(
            name=name, type=record_type, ttl=ttl, values=tuple(values)
        )

    def change_records(self, domain: str, records: Sequence[CanonicalRecord]) -> None:
        for record in records:
            self.change_calls.append(record)
            self._check(record.name)
            self._records[self._key(record.name, record.type)] = CanonicalRecord(
                name=record.name, type=record.type, ttl=record.ttl, values=record.values
            )

    def delete_record(self, domain: str, name: str, record_type: str) -> None:
        self.delete_calls.append((name, record_type))
        self._check(name)
        self._records.pop(self._key(name, record_type), None)

    def records(self) -> Dict[str, CanonicalRecord]:
        return {r.name: r for r in self._records.values()}


# =============================================================================
# Fake Registry
# =============================================================================


class FakeRegistry(ResourceRegistry):
    """In-memory resource registry with call tracking."""

    def __init__(
        self,
        resources: Optional[List[Resource]] = None,
        list_error: Optional[RegistryError] = None,
        status_error: Optional[RegistryError] = None,
        deregister_error: Optional[RegistryError] = None,
    ):
        self.resources = resources or []
        self.list_error = list_error
        self.status_error = status_error
        self.deregister_error = deregister_error
        self.status_calls: List[Tuple[str, str]] = []
        self.deregister_calls: List[str] = []

    def list_resources(self) -> List[Resource]:
        if self.list_error:
            raise self.list_error
        return list(self.resources)

    def set_resource_status(self, resource_id: str, status: str) -> None:
        if self.status_error:
            raise self.status_error
        self.status_calls.append((resource_id, status))

    def register_provider(self, name: str) -> None:
        pass

    def deregister_provider(self, name: str) -> None:
        self.deregister_calls.append(name)
        if self.deregister_error:
            raise self.deregister_error

    def get_domain(self) -> str:
        return DOMAIN


# =============================================================================
# Test Helpers
# =============================================================================


def make_resource(
    rsc_id: str, host: str, type: str = "A", ttl: int = 300, value: str = "1.1.1.1"
) -> Resource:
    return Resource(
        id=rsc_id,
        type="dns",
        value=DesiredRecord(id=rsc_id, host=host, type=type, ttl=ttl, value=value),
    )


def make_record(
    name: str, type: str = "A", ttl: int = 300, value: str = "1.1.1.1", origin_id=None
) -> CanonicalRecord:
    return CanonicalRecord(name=name, type=type, ttl=ttl, values=(value,), origin_id=origin_id)


def create_test_dispatcher(
    resources: Optional[List[Resource]] = None,
    records: Optional[List[CanonicalRecord]] = None,
    exclude_patterns: Optional[List[re.Pattern]] = None,
    key_by_type: bool = False,
    **provider_kwargs,
) -> Tuple[Dispatcher, FakeDNSProvider, FakeRegistry]:
    """Create a dispatcher wired to fakes.

    Returns tuple of (dispatcher, dns_provider, registry) for verification.
    """
    provider = FakeDNSProvider(initial_records=records, **provider_kwargs)
    registry = FakeRegistry(resources=resources)
    context = ReconcileContext(
        domain=DOMAIN,
        provider=provider,
        registry=registry,
        key_by_type=key_by_type,
        exclude_patterns=exclude_patterns or [],
    )
    return Dispatcher(context), provider, registry


# =============================================================================
# Apply Engine
# =============================================================================


def test_apply_create_reports_created_status() -> None:
    """Test create calls the provider and reports "created" for the resource."""
    dispatcher, dns, registry = create_test_dispatcher()
    applier = Applier(dispatcher.context)

    applier.apply(ChangeEntry(make_record("www", origin_id="r1"), Action.CREATE))

    assert dns.create_calls == [("www", "A", 300, ("1.1.1.1",))]
    assert registry.status_calls == [("r1", "created")]


def test_apply_update_sends_full_record_and_reports_created() -> None:
    """Test update sends the full record and reports "created"."""
    dispatcher, dns, registry = create_test_dispatcher(records=[make_record("www")])
    record = make_record("www", ttl=3600, value="2.2.2.2", origin_id="r1")

    Applier(dispatcher.context).apply(ChangeEntry(record, Action.UPDATE))

    assert dns.change_calls == [record]
    assert registry.status_calls == [("r1", "created")]


def test_apply_delete_never_reports_status() -> None:
    """Test delete removes the record without a status callback."""
    dispatcher, dns, registry = create_test_dispatcher(records=[make_record("old")])

    Applier(dispatcher.context).apply(ChangeEntry(make_record("old"), Action.DELETE))

    assert dns.delete_calls == [("old", "A")]
    assert registry.status_calls == []


def test_apply_create_without_origin_skips_status() -> None:
    """Test records without an origin resource skip the status callback."""
    dispatcher, dns, registry = create_test_dispatcher()

    Applier(dispatcher.context).apply(ChangeEntry(make_record("www"), Action.CREATE))

    assert dns.create_calls
    assert registry.status_calls == []


def test_apply_provider_failure_raises_apply_error() -> None:
    """Test provider failure raises ApplyError and reports no status."""
    dispatcher, dns, registry = create_test_dispatcher(failing_names={"www"})
    entry = ChangeEntry(make_record("www", origin_id="r1"), Action.CREATE)

    with pytest.raises(ApplyError) as excinfo:
        Applier(dispatcher.context).apply(entry)

    assert excinfo.value.entry == entry
    assert registry.status_calls == []


def test_apply_status_failure_raises_apply_error() -> None:
    """Test status callback failure raises ApplyError naming the resource."""
    dispatcher, _, registry = create_test_dispatcher()
    registry.status_error = RegistryError("boom")

    with pytest.raises(ApplyError, match="r1"):
        Applier(dispatcher.context).apply(
            ChangeEntry(make_record("www", origin_id="r1"), Action.CREATE)
        )


def test_apply_unknown_action_is_a_programming_error() -> None:
    """Test an unknown action raises ValueError instead of ApplyError."""
    dispatcher, _, _ = create_test_dispatcher()

    with pytest.raises(ValueError):
        Applier(dispatcher.context).apply(ChangeEntry(make_record("www"), "rename"))  # type: ignore[arg-type]


def test_apply_all_isolates_failures(caplog: pytest.LogCaptureFixture) -> None:
    """Test one failed entry does not stop the other entries."""
    dispatcher, dns, registry = create_test_dispatcher(
        records=[make_record("old")], failing_names={"bad"}
    )
    changes = {
        "bad": ChangeEntry(make_record("bad", origin_id="r-bad"), Action.CREATE),
        "good": ChangeEntry(make_record("good", origin_id="r-good"), Action.CREATE),
        "old": ChangeEntry(make_record("old"), Action.DELETE),
    }

    with caplog.at_level(logging.ERROR):
        summary = Applier(dispatcher.context).apply_all(changes)

    assert summary.applied == 2
    assert summary.failed == 1
    assert registry.status_calls == [("r-good", "created")]
    assert ("old", "A") in dns.delete_calls
    assert "r-bad" in caplog.text


# =============================================================================
# Periodic Full Check
# =============================================================================


def test_periodic_creates_missing_records() -> None:
    """Test periodic check creates records missing at the provider."""
    resources = [make_resource("r1", "@", value="1.2.3.4")]
    dispatcher, dns, registry = create_test_dispatcher(resources=resources)

    assert dispatcher.dispatch(PeriodicTick()) is True

    assert dns.create_calls == [("example.com", "A", 300, ("1.2.3.4",))]
    assert registry.status_calls == [("r1", "created")]


def test_periodic_updates_deletes_and_leaves_equal_records() -> None:
    """Test periodic check updates, deletes and leaves equal records alone."""
    resources = [
        make_resource("r1", "www", value="1.1.1.1"),
        make_resource("r2", "api", value="2.2.2.2"),
        make_resource("r3", "mail", type="MX", value="mx.example.com"),
    ]
    records = [
        make_record("www", value="1.1.1.1."),
        make_record("api", value="9.9.9.9"),
        make_record("mail", type="MX", value="10 mx.example.com."),
        make_record("old", value="8.8.8.8"),
    ]
    dispatcher, dns, registry = create_test_dispatcher(resources=resources, records=records)

    summary = dispatcher.check_all_resources()

    assert summary is not None and summary.applied == 2 and summary.failed == 0
    assert [r.name for r in dns.change_calls] == ["api"]
    assert dns.delete_calls == [("old", "A")]
    assert dns.create_calls == []
    assert registry.status_calls == [("r2", "created")]


def test_periodic_converges_on_second_pass() -> None:
    """Test a second pass after applying finds nothing to do."""
    resources = [make_resource("r1", "www"), make_resource("r2", "mail", "MX", value="mx")]
    dispatcher, dns, _ = create_test_dispatcher(resources=resources, records=[make_record("old")])

    dispatcher.check_all_resources()
    summary = dispatcher.check_all_resources()

    assert summary is not None and summary.applied == 0
    assert dns.records()["mail"].values == ("10 mx",)
    assert "old" not in dns.records()


def test_periodic_skips_non_dns_resources() -> None:
    """Test non-DNS resources are ignored by the periodic check."""
    resources = [Resource(id="c1", type="certificate", value={"domains": ["x"]})]
    dispatcher, dns, _ = create_test_dispatcher(resources=resources)

    dispatcher.check_all_resources()

    assert dns.create_calls == []


def test_periodic_abandons_pass_on_registry_error() -> None:
    """Test registry failure abandons the pass without changes."""
    dispatcher, dns, registry = create_test_dispatcher(records=[make_record("old")])
    registry.list_error = RegistryError("registry down")

    assert dispatcher.check_all_resources() is None
    assert dns.delete_calls == []


def test_periodic_abandons_pass_on_provider_list_error() -> None:
    """Test provider listing failure abandons the pass without changes."""
    dispatcher, dns, _ = create_test_dispatcher(
        resources=[make_resource("r1", "www")], list_error=TransportError("timeout")
    )

    assert dispatcher.check_all_resources() is None
    assert dns.create_calls == []


def test_periodic_continues_after_failed_action() -> None:
    """Test a failed action does not block sibling actions."""
    resources = [make_resource("r1", "bad"), make_resource("r2", "good")]
    dispatcher, dns, registry = create_test_dispatcher(resources=resources, failing_names={"bad"})

    summary = dispatcher.check_all_resources()

    assert summary is not None and summary.failed == 1 and summary.applied == 1
    assert registry.status_calls == [("r2", "created")]
    assert "good" in dns.records()


def test_periodic_leaves_excluded_records_alone() -> None:
    """Test excluded provider records are never deleted."""
    patterns = [re.compile(r"^_acme-challenge", re.IGNORECASE)]
    records = [make_record("_acme-challenge", "TXT", value="token")]
    dispatcher, dns, _ = create_test_dispatcher(records=records, exclude_patterns=patterns)

    dispatcher.check_all_resources()

    assert dns.delete_calls == []


def test_periodic_with_key_by_type_creates_both_apex_records() -> None:
    """Test keying by type creates both apex records."""
    resources = [
        make_resource("r1", "@", "A", value="1.2.3.4"),
        make_resource("r2", "@", "TXT", value="v=spf1 -all"),
    ]
    dispatcher, dns, registry = create_test_dispatcher(resources=resources, key_by_type=True)

    dispatcher.check_all_resources()

    assert {(c[0], c[1]) for c in dns.create_calls} == {
        ("example.com", "A"),
        ("example.com", "TXT"),
    }
    assert sorted(registry.status_calls) == [("r1", "created"), ("r2", "created")]


def test_periodic_names_differing_only_in_case_create_once() -> None:
    """Test two resources whose hosts differ only in case yield one create."""
    resources = [
        make_resource("r1", "www", value="1.1.1.1"),
        make_resource("r2", "WWW", value="2.2.2.2"),
    ]
    dispatcher, dns, registry = create_test_dispatcher(resources=resources)

    dispatcher.check_all_resources()

    assert dns.create_calls == [("WWW", "A", 300, ("2.2.2.2",))]
    assert registry.status_calls == [("r2", "created")]


# =============================================================================
# Single Resource Check
# =============================================================================


def test_resource_changed_not_found_creates_record() -> None:
    """Test a not-found lookup creates the record."""
    dispatcher, dns, registry = create_test_dispatcher()

    dispatcher.dispatch(ResourceChanged(make_resource("r1", "www")))

    assert dns.create_calls == [("www", "A", 300, ("1.1.1.1",))]
    assert registry.status_calls == [("r1", "created")]


def test_resource_changed_out_of_sync_updates_record() -> None:
    """Test an out-of-sync record is updated."""
    dispatcher, dns, registry = create_test_dispatcher(records=[make_record("www", ttl=3600)])

    entry = dispatcher.check_resource(make_resource("r1", "www", ttl=300))

    assert entry is not None and entry.action is Action.UPDATE
    assert [r.ttl for r in dns.change_calls] == [300]
    assert registry.status_calls == [("r1", "created")]


def test_resource_changed_in_sync_is_noop() -> None:
    """Test an in-sync record causes no remote calls."""
    dispatcher, dns, registry = create_test_dispatcher(records=[make_record("example.com")])

    assert dispatcher.check_resource(make_resource("r1", "@")) is None
    assert dns.create_calls == [] and dns.change_calls == []
    assert registry.status_calls == []


def test_resource_changed_provider_error_is_logged_and_dropped(
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Test other lookup errors are logged and the event dropped."""
    dispatcher, dns, _ = create_test_dispatcher(get_error=TransportError("connection reset"))

    with caplog.at_level(logging.ERROR):
        assert dispatcher.check_resource(make_resource("r1", "www")) is None

    assert dns.create_calls == []
    assert "connection reset" in caplog.text


def test_resource_changed_non_dns_is_dropped(caplog: pytest.LogCaptureFixture) -> None:
    """Test a non-DNS resource event is logged and dropped."""
    dispatcher, dns, _ = create_test_dispatcher()

    with caplog.at_level(logging.ERROR):
        assert dispatcher.dispatch(ResourceChanged(Resource(id="c1", type="certificate"))) is True

    assert dns.create_calls == []
    assert "c1 is not of type DNS" in caplog.text


def test_resource_changed_create_failure_does_not_raise() -> None:
    """Test a failed create on the single-record path does not raise."""
    dispatcher, _, registry = create_test_dispatcher(failing_names={"www"})

    dispatcher.dispatch(ResourceChanged(make_resource("r1", "www")))

    assert registry.status_calls == []


# =============================================================================
# Events and Termination
# =============================================================================


def test_terminate_deregisters_and_stops() -> None:
    """Test terminate deregisters the provider and stops dispatching."""
    dispatcher, _, registry = create_test_dispatcher()

    assert dispatcher.dispatch(Terminate()) is False
    assert registry.deregister_calls == ["dns"]


def test_terminate_tolerates_deregistration_errors() -> None:
    """Test deregistration errors on terminate are only logged."""
    dispatcher, _, registry = create_test_dispatcher()
    registry.deregister_error = RegistryError("gone")

    assert dispatcher.dispatch(Terminate()) is False


def test_event_from_message_builds_resource_changed() -> None:
    """Test a resource message becomes a ResourceChanged event."""
    message = {
        "type": "NewMessage",
        "payload": {
            "id": "r1",
            "type": "dns",
            "value": {"host": "www", "type": "A", "ttl": 300, "value": "1.1.1.1"},
        },
    }

    event = event_from_message(message)

    assert event == ResourceChanged(make_resource("r1", "www"))


@pytest.mark.parametrize("message", [None, "hello", [1, 2], {"payload": "nope"}, {"payload": {}}])
def test_event_from_message_drops_malformed_payloads(message) -> None:
    """Test malformed messages are dropped."""
    assert event_from_message(message) is None
