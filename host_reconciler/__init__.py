"""Declarative, transactional host configuration reconciler."""

from host_reconciler.config import APP_NAME, VERSION

__version__ = VERSION

__all__ = ["APP_NAME", "VERSION", "__version__"]
