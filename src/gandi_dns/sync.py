"""Reconciliation of registry DNS resources against the DNS provider.

A reconciliation pass fetches the desired records from the registry and the
observed records from the provider, computes a change-set and applies it.
Nothing is kept between passes; the next periodic pass starts from scratch.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Hashable, List, Optional, Sequence, Union

from gandi_dns.providers import (
    DNSProvider,
    NotFoundError,
    ProviderError,
    RegistryError,
    ResourceRegistry,
    resource_from_json,
)
from gandi_dns.records import (
    CanonicalRecord,
    Resource,
    names_match,
    normalize,
    record_to_string,
    records_equal,
)

logger = logging.getLogger(__name__)

PROVIDER_TYPE = "dns"
STATUS_CREATED = "created"

# =============================================================================
# Change-set
# =============================================================================


class Action(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEntry:
    record: CanonicalRecord
    action: Action


ChangeSet = Dict[Hashable, ChangeEntry]


def change_key(record: CanonicalRecord, key_by_type: bool = False) -> Hashable:
    if key_by_type:
        return (record.name.lower(), record.type.lower())
    return record.name.lower()


def _same_identity(a: CanonicalRecord, b: CanonicalRecord, key_by_type: bool) -> bool:
    if not names_match(a.name, b.name):
        return False
    return not key_by_type or a.type.lower() == b.type.lower()


def diff(
    desired: Sequence[CanonicalRecord],
    observed: Sequence[CanonicalRecord],
    key_by_type: bool = False,
) -> ChangeSet:
    """Classify records into creates, updates and deletes.

    Records are matched by case-insensitive name (and type when key_by_type
    is set). Entries are keyed by lowercased name, so two desired records
    whose names differ only in case, or that share a name but not a type,
    overwrite each other unless key_by_type is set; the last one wins.
    """
    changes: ChangeSet = {}

    for d in desired:
        match = next((o for o in observed if _same_identity(d, o, key_by_type)), None)
        if match is None:
            changes[change_key(d, key_by_type)] = ChangeEntry(d, Action.CREATE)
        elif not records_equal(d, match):
            changes[change_key(d, key_by_type)] = ChangeEntry(d, Action.UPDATE)

    for o in observed:
        if not any(_same_identity(d, o, key_by_type) for d in desired):
            changes[change_key(o, key_by_type)] = ChangeEntry(o, Action.DELETE)

    return changes


def is_excluded(name: str, patterns: Sequence[re.Pattern]) -> bool:
    """Check if a record name matches any exclusion pattern."""
    for pattern in patterns:
        if pattern.search(name):
            return True
    return False


def filter_excluded(
    records: Sequence[CanonicalRecord], patterns: Sequence[re.Pattern]
) -> List[CanonicalRecord]:
    if not patterns:
        return list(records)
    kept = []
    for record in records:
        if is_excluded(record.name, patterns):
            logger.debug(f"Excluding record {record_to_string(record)} (matches exclusion pattern)")
            continue
        kept.append(record)
    return kept


# =============================================================================
# Context
# =============================================================================


@dataclass
class ReconcileContext:
    """Everything a reconciliation pass needs, built once at startup."""

    domain: str
    provider: DNSProvider
    registry: ResourceRegistry
    key_by_type: bool = False
    exclude_patterns: List[re.Pattern] = field(default_factory=list)


# =============================================================================
# Apply Engine
# =============================================================================


class ApplyError(Exception):
    def __init__(self, message: str, entry: ChangeEntry):
        super().__init__(message)
        self.entry = entry


@dataclass
class ApplySummary:
    applied: int = 0
    failed: int = 0


class Applier:
    """Executes change-set entries against the provider."""

    def __init__(self, context: ReconcileContext):
        self.context = context

    def apply(self, entry: ChangeEntry) -> None:
        record = entry.record
        provider = self.context.provider
        domain = self.context.domain

        try:
            if entry.action is Action.CREATE:
                provider.create_record(domain, record.name, record.type, record.ttl, record.values)
                logger.info(f"Record {record.name}({record.type}) has been created")
            elif entry.action is Action.UPDATE:
                provider.change_records(domain, [record])
                logger.info(f"Record {record.name}({record.type}) has been updated")
            elif entry.action is Action.DELETE:
                provider.delete_record(domain, record.name, record.type)
                logger.info(f"Record {record.name}({record.type}) has been deleted")
                return
            else:
                raise ValueError(f"Unknown change action: {entry.action!r}")
        except ProviderError as e:
            raise ApplyError(
                f"Failed to {entry.action.value} record {record.name}({record.type}) "
                f"in {provider.name}: {e}",
                entry,
            ) from e

        if record.origin_id is None:
            return
        try:
            self.context.registry.set_resource_status(record.origin_id, STATUS_CREATED)
        except RegistryError as e:
            raise ApplyError(
                f"Failed to set status for resource {record.origin_id}: {e}", entry
            ) from e

    def apply_all(self, changes: ChangeSet) -> ApplySummary:
        """Apply every entry; a failed entry does not stop the others."""
        summary = ApplySummary()
        for entry in changes.values():
            try:
                self.apply(entry)
                summary.applied += 1
            except ApplyError as e:
                summary.failed += 1
                resource = entry.record.origin_id or "-"
                logger.error(f"{e} (resource {resource}, {record_to_string(entry.record)})")
        return summary


# =============================================================================
# Events
# =============================================================================


@dataclass(frozen=True)
class ResourceChanged:
    resource: Resource


@dataclass(frozen=True)
class PeriodicTick:
    pass


@dataclass(frozen=True)
class Terminate:
    pass


Event = Union[ResourceChanged, PeriodicTick, Terminate]


def event_from_message(message: Any) -> Optional[ResourceChanged]:
    """Turn a raw registry message into a ResourceChanged event.

    Malformed messages are logged and dropped by returning None.
    """
    if not isinstance(message, dict):
        logger.error(f"Cannot handle new message. Unexpected payload type: {type(message).__name__}")
        return None

    payload = message.get("payload", message)
    if not isinstance(payload, dict) or not payload.get("id"):
        logger.error("Payload is not a Protos resource")
        return None

    return ResourceChanged(resource_from_json(payload))


# =============================================================================
# Trigger Dispatcher
# =============================================================================


class Dispatcher:
    """Routes events to the single-record or full reconciliation path."""

    def __init__(self, context: ReconcileContext):
        self.context = context
        self.applier = Applier(context)

    def dispatch(self, event: Event) -> bool:
        """Handle one event to completion. Returns False once terminated."""
        if isinstance(event, ResourceChanged):
            self.check_resource(event.resource)
        elif isinstance(event, PeriodicTick):
            self.check_all_resources()
        elif isinstance(event, Terminate):
            self.terminate()
            return False
        else:
            logger.error(f"Dropping unknown event: {event!r}")
        return True

    def check_resource(self, resource: Resource) -> Optional[ChangeEntry]:
        """Check a single DNS resource against the provider and fix it."""
        if not resource.is_dns:
            logger.error(f"Resource {resource.id} is not of type DNS")
            return None

        ctx = self.context
        desired = normalize(resource.value, ctx.domain)
        if is_excluded(desired.name, ctx.exclude_patterns):
            logger.debug(f"Skipping excluded DNS resource {resource.id} {record_to_string(desired)}")
            return None

        logger.debug(f"Checking dns resource {resource.id} {record_to_string(desired)}")
        try:
            observed = ctx.provider.get_record(ctx.domain, desired.name, desired.type)
        except NotFoundError:
            logger.info(
                f"Could not find DNS resource {resource.id} ({record_to_string(desired)}) "
                f"in {ctx.provider.name}. Creating it"
            )
            entry = ChangeEntry(desired, Action.CREATE)
        except ProviderError as e:
            logger.error(f"Failed to retrieve record from {ctx.provider.name}: {e}")
            return None
        else:
            if records_equal(desired, observed):
                return None
            logger.info(
                f"DNS resource {resource.id} ({record_to_string(desired)}) is not in sync "
                f"with {ctx.provider.name}. Updating it"
            )
            entry = ChangeEntry(desired, Action.UPDATE)

        self.applier.apply_all({change_key(desired, ctx.key_by_type): entry})
        return entry

    def desired_records(self) -> List[CanonicalRecord]:
        records = []
        for resource in self.context.registry.list_resources():
            if not resource.is_dns:
                logger.debug(f"Skipping non-DNS resource {resource.id} ({resource.type})")
                continue
            records.append(normalize(resource.value, self.context.domain))
        return records

    def check_all_resources(self) -> Optional[ApplySummary]:
        """Run a full reconciliation pass."""
        ctx = self.context
        logger.debug("Checking all DNS resources")

        try:
            desired = self.desired_records()
        except RegistryError as e:
            logger.error(f"Could not retrieve DNS resources from the registry: {e}")
            return None

        try:
            observed = ctx.provider.list_records(ctx.domain)
        except ProviderError as e:
            logger.error(f"Could not retrieve all DNS records from {ctx.provider.name}: {e}")
            return None

        desired = filter_excluded(desired, ctx.exclude_patterns)
        observed = filter_excluded(observed, ctx.exclude_patterns)

        changes = diff(desired, observed, key_by_type=ctx.key_by_type)
        if not changes:
            logger.info("Records are the same. Nothing to do")
            return ApplySummary()

        logger.info(f"Records are NOT the same. Synchronizing {len(changes)} change(s)")
        summary = self.applier.apply_all(changes)
        if summary.failed:
            logger.warning(f"Sync finished with {summary.failed} failed change(s)")
        return summary

    def terminate(self) -> None:
        logger.info("Received terminate call. Deregistering as a provider and shutting down.")
        try:
            self.context.registry.deregister_provider(PROVIDER_TYPE)
        except RegistryError as e:
            logger.error(f"Failed to deregister as {PROVIDER_TYPE} provider: {e}")
