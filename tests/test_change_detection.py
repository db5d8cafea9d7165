from __future__ import annotations

from datetime import UTC, datetime

import pytest

from grantsync.errors import StoreError
from grantsync.normalize.checksum import generate_grant_checksum
from grantsync.normalize.schema import GrantCategory, GrantSourceType, NormalizedGrant
from grantsync.pipeline.change_detection import UpsertOutcome, upsert_if_changed
from grantsync.store.memory import InMemoryGrantStore
from grantsync.store.models import IngestionSourceType, RawGrant, RawGrantStatus

NOW = datetime(2026, 4, 1, tzinfo=UTC)


class _FailOnceStore(InMemoryGrantStore):
    """Raises StoreError the first time the named method is called."""

    def __init__(self, failing_method: str) -> None:
        super().__init__()
        self.failing_method = failing_method
        self.failed = False

    def _maybe_fail(self, method: str) -> None:
        if method == self.failing_method and not self.failed:
            self.failed = True
            raise StoreError(f"{method} failed: database is locked")

    def create_raw_grant(self, raw_grant):  # noqa: ANN001, ANN201
        self._maybe_fail("create_raw_grant")
        return super().create_raw_grant(raw_grant)

    def update_raw_grant(self, raw_grant_id, **fields):  # noqa: ANN001, ANN003, ANN201
        self._maybe_fail("update_raw_grant")
        return super().update_raw_grant(raw_grant_id, **fields)


class _CountingStore(InMemoryGrantStore):
    def __init__(self) -> None:
        super().__init__()
        self.grant_updates = 0

    def update_grant(self, grant_id, **fields):  # noqa: ANN001, ANN003, ANN201
        self.grant_updates += 1
        return super().update_grant(grant_id, **fields)


def _normalized(**overrides) -> NormalizedGrant:  # noqa: ANN003
    values = {
        "title": "School Meals Program",
        "category": GrantCategory.NUTRITION,
        "source_type": GrantSourceType.FEDERAL,
        "funding_amount_min": 1000.0,
        "funding_amount_max": 5000.0,
        "deadline": datetime(2026, 9, 30, tzinfo=UTC),
        "external_id": "opp-1",
        "description": "Breakfast and lunch support.",
        "requirements": {"eligibleApplicants": ["Districts"]},
    }
    values.update(overrides)
    return NormalizedGrant(**values)


def _store_with_source() -> tuple[_CountingStore, str]:
    store = _CountingStore()
    source = store.upsert_source(
        "grants_gov",
        display_name="Grants.gov",
        source_type=IngestionSourceType.FEDERAL_API,
        base_url="https://www.grants.gov",
    )
    return store, source.id


def test_new_record_creates_linked_grant_and_raw_record() -> None:
    store, source_id = _store_with_source()

    outcome = upsert_if_changed(store, source_id, _normalized(), {"opportunityId": "opp-1"}, now=NOW)

    assert outcome == UpsertOutcome.NEW
    raw = store.find_raw_grant(source_id, "opp-1")
    assert raw is not None
    assert raw.status == RawGrantStatus.NORMALIZED
    assert raw.checksum == generate_grant_checksum(_normalized())
    grant = store.get_grant(raw.grant_id)
    assert grant is not None
    assert grant.ingestion_source_id == source_id
    assert grant.last_synced_at == NOW
    assert grant.requirements.get_list("eligibleApplicants") == ["Districts"]


def test_repeat_with_identical_input_performs_no_writes() -> None:
    store, source_id = _store_with_source()
    upsert_if_changed(store, source_id, _normalized(), {"v": 1}, now=NOW)
    mutations_before = store.mutation_count

    outcome = upsert_if_changed(store, source_id, _normalized(), {"v": 1}, now=NOW)

    assert outcome == UpsertOutcome.UNCHANGED
    assert store.mutation_count == mutations_before


def test_changed_checksum_updates_grant_exactly_once() -> None:
    store, source_id = _store_with_source()
    upsert_if_changed(store, source_id, _normalized(), {"v": 1}, now=NOW)
    changed = _normalized(funding_amount_max=7500.0, title="School Meals Program (revised)")

    outcome = upsert_if_changed(store, source_id, changed, {"v": 2}, now=NOW)

    assert outcome == UpsertOutcome.UPDATED
    assert store.grant_updates == 1
    raw = store.find_raw_grant(source_id, "opp-1")
    assert raw is not None
    assert raw.checksum == generate_grant_checksum(changed)
    assert raw.raw_data == {"v": 2}
    grant = store.get_grant(raw.grant_id)
    assert grant is not None
    assert grant.title == "School Meals Program (revised)"
    assert grant.funding_amount_max == 7500.0
    assert store.count_grants() == 1

    mutations_before = store.mutation_count
    assert upsert_if_changed(store, source_id, changed, {"v": 2}, now=NOW) == UpsertOutcome.UNCHANGED
    assert store.mutation_count == mutations_before
    assert store.grant_updates == 1


def test_unlinked_raw_record_is_repaired_as_new() -> None:
    store, source_id = _store_with_source()
    normalized = _normalized()
    store.create_raw_grant(
        RawGrant(
            source_id=source_id,
            external_id="opp-1",
            raw_data={"v": 1},
            checksum=generate_grant_checksum(normalized),
        )
    )

    outcome = upsert_if_changed(store, source_id, normalized, {"v": 1}, now=NOW)

    assert outcome == UpsertOutcome.NEW
    raw = store.find_raw_grant(source_id, "opp-1")
    assert raw is not None
    assert raw.grant_id is not None
    assert store.get_grant(raw.grant_id) is not None
    assert upsert_if_changed(store, source_id, normalized, {"v": 1}, now=NOW) == UpsertOutcome.UNCHANGED


def test_raw_record_pointing_at_missing_grant_is_relinked() -> None:
    store, source_id = _store_with_source()
    store.create_raw_grant(
        RawGrant(
            source_id=source_id,
            external_id="opp-1",
            raw_data={"v": 0},
            checksum="stale",
            grant_id="does-not-exist",
        )
    )

    outcome = upsert_if_changed(store, source_id, _normalized(), {"v": 1}, now=NOW)

    assert outcome == UpsertOutcome.NEW
    raw = store.find_raw_grant(source_id, "opp-1")
    assert raw is not None
    assert raw.grant_id != "does-not-exist"
    assert raw.checksum == generate_grant_checksum(_normalized())
    assert raw.raw_data == {"v": 1}


def _register_source(store: InMemoryGrantStore) -> str:
    return store.upsert_source(
        "ca_grants",
        display_name="California Grants Portal",
        source_type=IngestionSourceType.STATE_CSV,
        base_url="https://grants.ca.gov",
    ).id


def test_failed_raw_write_leaves_no_grant_behind() -> None:
    store = _FailOnceStore("create_raw_grant")
    source_id = _register_source(store)

    with pytest.raises(StoreError):
        upsert_if_changed(store, source_id, _normalized(external_id="x1"), {"v": 1}, now=NOW)
    assert store.count_grants(source_id) == 0

    assert upsert_if_changed(store, source_id, _normalized(external_id="x1"), {"v": 1}, now=NOW) == UpsertOutcome.NEW
    assert store.count_grants(source_id) == 1


def test_failed_link_update_is_repaired_without_a_second_grant() -> None:
    store = _FailOnceStore("update_raw_grant")
    source_id = _register_source(store)

    with pytest.raises(StoreError):
        upsert_if_changed(store, source_id, _normalized(external_id="x1"), {"v": 1}, now=NOW)
    raw = store.find_raw_grant(source_id, "x1")
    assert raw is not None
    assert raw.grant_id is None
    assert raw.status == RawGrantStatus.FETCHED

    assert upsert_if_changed(store, source_id, _normalized(external_id="x1"), {"v": 1}, now=NOW) == UpsertOutcome.NEW
    assert store.count_grants(source_id) == 1
    raw = store.find_raw_grant(source_id, "x1")
    assert raw is not None
    assert raw.status == RawGrantStatus.NORMALIZED
    assert raw.grant_id == store.find_grant(source_id, "x1").id
    assert upsert_if_changed(store, source_id, _normalized(external_id="x1"), {"v": 1}, now=NOW) == UpsertOutcome.UNCHANGED
