from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .store import RunError, ScheduleStore, StoreError, TemplateItemRecord

logger = logging.getLogger(__name__)

DefinitionKey = tuple[str, str]


@dataclass
class DefinitionResolution:
    """Resolved (metric name, period type) -> definition id, plus per-item failures."""

    definition_ids: dict[DefinitionKey, str] = field(default_factory=dict)
    errors: list[RunError] = field(default_factory=list)

    def id_for(self, item: TemplateItemRecord) -> str | None:
        return self.definition_ids.get((item.metric_name, item.period_type))


def _unique_items(items: list[TemplateItemRecord]) -> list[TemplateItemRecord]:
    seen: dict[DefinitionKey, TemplateItemRecord] = {}
    for item in items:
        seen.setdefault((item.metric_name, item.period_type), item)
    return list(seen.values())


def _index_existing(store: ScheduleStore, investor_id: str, names: set[str]) -> dict[DefinitionKey, str]:
    return {
        (record.name, record.period_type): record.definition_id
        for record in store.find_definitions(investor_id, names)
    }


def resolve_definitions(
    store: ScheduleStore,
    *,
    investor_id: str,
    items: list[TemplateItemRecord],
) -> DefinitionResolution:
    """Make sure every template item has a durable definition for ``investor_id``.

    Existing rows are looked up in one query and the missing ones inserted in
    one batch. When the batch insert fails, each missing item is retried on its
    own so a single bad item does not block the rest; items that still fail are
    reported in ``errors`` and left out of ``definition_ids``.
    """
    resolution = DefinitionResolution()
    wanted = _unique_items(items)
    if not wanted:
        return resolution

    names = {item.metric_name for item in wanted}
    try:
        existing = _index_existing(store, investor_id, names)
    except StoreError as exc:
        logger.warning("definition lookup failed investor=%s: %s", investor_id, exc)
        resolution.errors.append(RunError(message=f"Failed to load metric definitions: {exc}"))
        return resolution

    missing = [item for item in wanted if (item.metric_name, item.period_type) not in existing]
    failed_keys: set[DefinitionKey] = set()
    if missing:
        try:
            store.insert_definitions(investor_id, missing)
        except StoreError as exc:
            logger.warning(
                "batch definition insert failed investor=%s count=%d: %s",
                investor_id,
                len(missing),
                exc,
            )
            for item in missing:
                try:
                    store.insert_definitions(investor_id, [item])
                except StoreError as item_exc:
                    failed_keys.add((item.metric_name, item.period_type))
                    resolution.errors.append(
                        RunError(
                            metric=item.metric_name,
                            message=f"Failed to create definition: {item_exc}",
                        )
                    )
        # Concurrent runs may have inserted the same keys; read back to pick up their ids.
        try:
            existing = _index_existing(store, investor_id, names)
        except StoreError as exc:
            resolution.errors.append(RunError(message=f"Failed to load metric definitions: {exc}"))

    for item in wanted:
        key = (item.metric_name, item.period_type)
        definition_id = existing.get(key)
        if definition_id is None:
            if key not in failed_keys:
                resolution.errors.append(
                    RunError(metric=item.metric_name, message="Metric definition could not be resolved")
                )
            continue
        resolution.definition_ids[key] = definition_id
    return resolution
