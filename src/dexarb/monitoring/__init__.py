"""Console monitoring components."""

from .monitor import OpportunityMonitor

__all__ = [
    "OpportunityMonitor",
]
