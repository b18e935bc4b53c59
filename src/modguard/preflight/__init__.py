"""Request admission: coalescing and budget enforcement."""

from .budget import BudgetTracker
from .dedupe import RequestCoalescer

__all__ = [
    "BudgetTracker",
    "RequestCoalescer",
]
