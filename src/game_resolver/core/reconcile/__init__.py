"""未解決エントリの再照合。"""

from .reconciler import ReconcileScheduler, Reconciler, ReconReport

__all__ = ["ReconReport", "ReconcileScheduler", "Reconciler"]
