"""Versioned Clause Comparer package."""

from .config_loader import ComparisonConfig, ConfigRegistry
from .models_vcc import Clause, ComparisonReport, ComparisonResult, ResolvedAlignment
from .orchestrator import Comparator
from .pipeline import PipelineCoordinator

__all__ = [
    "Clause",
    "ComparisonConfig",
    "ComparisonReport",
    "ComparisonResult",
    "Comparator",
    "ConfigRegistry",
    "PipelineCoordinator",
    "ResolvedAlignment",
]
