"""Service layer.

Attributes:
    common: Shared per-network configuration models.
    synchronizer: The event synchronization service.
"""

from .synchronizer import Synchronizer, SynchronizerConfig


__all__ = ["Synchronizer", "SynchronizerConfig"]
