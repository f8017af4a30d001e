from __future__ import annotations

from metric_scheduler.definitions import resolve_definitions
from metric_scheduler.store import InMemoryScheduleStore, StoreError, TemplateItemRecord


class _FlakyDefinitionStore(InMemoryScheduleStore):
    """Fails every multi-row insert and any single insert of a poisoned metric."""

    def __init__(self, *, poisoned: set[str]) -> None:
        super().__init__()
        self.poisoned = poisoned
        self.insert_calls: list[list[str]] = []

    def insert_definitions(self, investor_id, items):
        self.insert_calls.append([item.metric_name for item in items])
        if len(items) > 1 or any(item.metric_name in self.poisoned for item in items):
            raise StoreError("insert rejected")
        return super().insert_definitions(investor_id, items)


class _LossyDefinitionStore(InMemoryScheduleStore):
    """Rejects one (name, period_type) outright and silently drops another."""

    def __init__(self, *, rejected: tuple[str, str], dropped: tuple[str, str]) -> None:
        super().__init__()
        self.rejected = rejected
        self.dropped = dropped

    def insert_definitions(self, investor_id, items):
        keys = {(item.metric_name, item.period_type) for item in items}
        if len(items) > 1 or self.rejected in keys:
            raise StoreError("insert rejected")
        if self.dropped in keys:
            return []
        return super().insert_definitions(investor_id, items)


class _BrokenLookupStore(InMemoryScheduleStore):
    def find_definitions(self, investor_id, names):
        raise StoreError("connection reset")


def _items(*names: str, period_type: str = "quarterly") -> list[TemplateItemRecord]:
    return [TemplateItemRecord(metric_name=name, period_type=period_type) for name in names]


def test_resolver_creates_missing_definitions_once() -> None:
    store = InMemoryScheduleStore()

    first = resolve_definitions(store, investor_id="inv-1", items=_items("Revenue", "Burn Rate"))
    second = resolve_definitions(store, investor_id="inv-1", items=_items("Revenue", "Burn Rate"))

    assert first.errors == []
    assert second.errors == []
    assert first.definition_ids == second.definition_ids
    assert len(store.find_definitions("inv-1", {"Revenue", "Burn Rate"})) == 2


def test_resolver_keys_on_name_and_period_type() -> None:
    store = InMemoryScheduleStore()
    items = _items("Revenue") + _items("Revenue", period_type="monthly") + _items("Revenue")

    resolution = resolve_definitions(store, investor_id="inv-1", items=items)

    assert set(resolution.definition_ids) == {("Revenue", "quarterly"), ("Revenue", "monthly")}
    assert len(set(resolution.definition_ids.values())) == 2


def test_resolver_definitions_are_scoped_per_investor() -> None:
    store = InMemoryScheduleStore()

    first = resolve_definitions(store, investor_id="inv-1", items=_items("Revenue"))
    second = resolve_definitions(store, investor_id="inv-2", items=_items("Revenue"))

    assert first.definition_ids[("Revenue", "quarterly")] != second.definition_ids[("Revenue", "quarterly")]


def test_resolver_falls_back_to_per_item_inserts() -> None:
    store = _FlakyDefinitionStore(poisoned={"Churn"})

    resolution = resolve_definitions(store, investor_id="inv-1", items=_items("Revenue", "Churn", "Burn Rate"))

    assert store.insert_calls[0] == ["Revenue", "Churn", "Burn Rate"]
    assert set(resolution.definition_ids) == {("Revenue", "quarterly"), ("Burn Rate", "quarterly")}
    assert len(resolution.errors) == 1
    assert resolution.errors[0].metric == "Churn"
    assert resolution.id_for(TemplateItemRecord(metric_name="Churn", period_type="quarterly")) is None


def test_resolver_reports_each_period_type_of_a_shared_name() -> None:
    store = _LossyDefinitionStore(rejected=("Revenue", "quarterly"), dropped=("Revenue", "monthly"))
    items = _items("Revenue") + _items("Revenue", period_type="monthly")

    resolution = resolve_definitions(store, investor_id="inv-1", items=items)

    assert resolution.definition_ids == {}
    messages = sorted(value.message for value in resolution.errors)
    assert len(messages) == 2
    assert messages[0].startswith("Failed to create definition")
    assert messages[1] == "Metric definition could not be resolved"


def test_resolver_records_lookup_failure() -> None:
    store = _BrokenLookupStore()

    resolution = resolve_definitions(store, investor_id="inv-1", items=_items("Revenue"))

    assert resolution.definition_ids == {}
    assert len(resolution.errors) == 1
    assert "connection reset" in resolution.errors[0].message


def test_resolver_with_no_items_does_nothing() -> None:
    store = InMemoryScheduleStore()
    resolution = resolve_definitions(store, investor_id="inv-1", items=[])
    assert resolution.definition_ids == {}
    assert resolution.errors == []
