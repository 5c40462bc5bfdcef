"""Background workers."""
from .status_reconciler import StatusReconciler, start_status_reconciler

__all__ = ["StatusReconciler", "start_status_reconciler"]
