"""
projection_engine package - keeps a denormalized read store consistent with
the write store through CDC, selective dual-writes and reconciliation.

Expose the controller and the three writers it coordinates.
"""
from .controller import SyncController
from .cdc.consumer import ChangeConsumer
from .dual_write.coordinator import DualWriteCoordinator
from .reconcile.reconciler import Reconciler, ReconciliationWindow

__all__ = ["SyncController", "ChangeConsumer", "DualWriteCoordinator", "Reconciler", "ReconciliationWindow"]
