"""Read-only access to live host state."""

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Mapping

from host_reconciler.catalog import DesiredStateCatalog
from host_reconciler.models import Backend, ObservedValue, SettingID

if TYPE_CHECKING:
    from host_reconciler.appliers.base import ChangeApplier

logger = logging.getLogger(__name__)


class StateProbe(ABC):
    """Reads the current value of a setting. Must never mutate the host."""

    @abstractmethod
    def probe(self, setting_id: SettingID) -> ObservedValue:
        ...


class HostProbe(StateProbe):
    """Routes each setting to the reader of the backend the catalog assigns it."""

    def __init__(self, catalog: DesiredStateCatalog, appliers: Mapping[Backend, "ChangeApplier"]):
        self.catalog = catalog
        self.appliers = appliers

    def probe(self, setting_id: SettingID) -> ObservedValue:
        if setting_id not in self.catalog:
            return ObservedValue.failed(f"{setting_id} is not in the catalog")
        backend = self.catalog.backend_of(setting_id)
        applier = self.appliers.get(backend)
        if applier is None:
            return ObservedValue.failed(f"no applier registered for {backend.value}")
        try:
            observed = applier.probe(setting_id)
        except Exception as e:  # probes fail soft
            logger.debug(f"Probe of {setting_id} raised: {e!r}")
            return ObservedValue.failed(str(e) or e.__class__.__name__)
        logger.debug(f"Probed {setting_id}: {observed.describe()}")
        return observed
