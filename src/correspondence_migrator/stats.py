"""
Read-only statistics over the migration state.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .models import Phase, PhaseStatus

if TYPE_CHECKING:
    from .models import Category
    from .protocols import MigrationStore


@dataclass
class CategoryStatistics:
    """Snapshot of one pipeline variant."""

    category: Category
    total: int = 0
    by_phase: dict[str, int] = field(default_factory=dict)
    by_overall_status: dict[str, int] = field(default_factory=dict)
    by_phase_status: dict[str, int] = field(default_factory=dict)
    steps_by_phase: dict[str, dict[str, int]] = field(default_factory=dict)
    retryable: int = 0
    exhausted: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "total": self.total,
            "by_phase": self.by_phase,
            "by_overall_status": self.by_overall_status,
            "by_phase_status": self.by_phase_status,
            "steps_by_phase": self.steps_by_phase,
            "retryable": self.retryable,
            "exhausted": self.exhausted,
        }


class MigrationStatistics:
    def __init__(self, store: MigrationStore) -> None:
        self._store = store

    def for_category(self, category: Category) -> CategoryStatistics:
        phases: Counter[str] = Counter()
        overall: Counter[str] = Counter()
        phase_statuses: Counter[str] = Counter()
        steps: dict[str, Counter[str]] = {}
        stats = CategoryStatistics(category=category)

        for record in self._store.iter_records(category):
            stats.total += 1
            phases[record.current_phase.value] += 1
            overall[record.overall_status.value] += 1
            phase_statuses[record.phase_status.value] += 1
            if record.current_step and record.current_phase != Phase.COMPLETED:
                steps.setdefault(record.current_phase.value, Counter())[record.current_step] += 1
            if record.is_retryable:
                stats.retryable += 1
            if record.is_exhausted:
                stats.exhausted += 1

        stats.by_phase = dict(phases)
        stats.by_overall_status = dict(overall)
        stats.by_phase_status = dict(phase_statuses)
        stats.steps_by_phase = {phase: dict(counter) for phase, counter in steps.items()}
        return stats

    def phase_counts(self, category: Category) -> dict[str, int]:
        return self.for_category(category).by_phase

    def step_counts(self, category: Category, phase: Phase) -> dict[str, int]:
        return self.for_category(category).steps_by_phase.get(phase.value, {})

    def error_count(self, category: Category) -> int:
        return self.for_category(category).by_phase_status.get(PhaseStatus.ERROR.value, 0)

    def import_summary(self) -> dict[str, Any]:
        statuses: Counter[str] = Counter()
        entity_failures: Counter[str] = Counter()
        total = 0
        retryable = 0
        for status in self._store.iter_import_statuses():
            total += 1
            statuses[status.overall_status.value] += 1
            if status.is_retryable:
                retryable += 1
            for entity_type in status.failed_entity_types():
                entity_failures[entity_type] += 1
        return {
            "total": total,
            "by_overall_status": dict(statuses),
            "failed_by_entity_type": dict(entity_failures),
            "retryable": retryable,
        }
