"""
Diff engine: desired catalog versus probed host state.

Units come out in catalog declaration order. They are never grouped by
backend or reordered, so two runs against the same host print the same plan.
"""

import logging
from dataclasses import dataclass
from typing import List

from host_reconciler.catalog import CatalogEntry, DesiredStateCatalog
from host_reconciler.models import ChangeUnit, ObservedValue
from host_reconciler.probe import StateProbe
from host_reconciler.values import matches

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettingStatus:
    """One catalog entry next to what the host currently reports."""

    entry: CatalogEntry
    observed: ObservedValue
    in_sync: bool
    skipped: bool = False

    @property
    def setting_id(self) -> str:
        return self.entry.setting_id


def compare(catalog: DesiredStateCatalog, probe: StateProbe) -> List[SettingStatus]:
    """Probe every catalog entry and say whether it already matches."""
    statuses: List[SettingStatus] = []
    for entry in catalog:
        observed = probe.probe(entry.setting_id)
        if observed.is_failed:
            logger.warning(f"Could not probe {entry.setting_id}: {observed.reason}")
        skipped = entry.when_present and observed.is_absent
        statuses.append(
            SettingStatus(
                entry=entry,
                observed=observed,
                in_sync=matches(entry.desired, observed),
                skipped=skipped,
            )
        )
    return statuses


def diff(catalog: DesiredStateCatalog, probe: StateProbe) -> List[ChangeUnit]:
    """Build the ordered change set needed to bring the host to the catalog."""
    units: List[ChangeUnit] = []
    for status in compare(catalog, probe):
        if status.in_sync:
            continue
        if status.skipped:
            logger.info(f"Skipping {status.setting_id}: not available on this host")
            continue
        units.append(
            ChangeUnit(
                setting_id=status.setting_id,
                backend=status.entry.backend,
                previous=status.observed,
                desired=status.entry.desired,
            )
        )
    logger.debug(f"Diff produced {len(units)} change unit(s) from {len(catalog)} setting(s)")
    return units
