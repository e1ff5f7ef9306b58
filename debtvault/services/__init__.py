"""Service modules"""
from .cache import ReadModelCache
from .monitor import Monitor
from .reconciler import Reconciler
from .session import AccountSession

__all__ = ["AccountSession", "Monitor", "ReadModelCache", "Reconciler"]
