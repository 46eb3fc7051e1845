from .entry import Entry
from .analysis import Analysis
from .summary import Summary

__all__ = [
    "Entry",
    "Analysis",
    "Summary",
]
