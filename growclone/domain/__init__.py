"""Domain models for grow-and-clone planning.

This package contains the immutable values passed between the estimator,
classifier, planner and orchestrator.
"""

from __future__ import annotations

from .models import (
    GIB,
    DiskGeometry,
    EstimateSource,
    LabelType,
    LayoutPlan,
    Partition,
    PlanningContext,
    Role,
    RunMode,
    RunOptions,
    SizeEstimate,
)


__all__ = [
    "GIB",
    "DiskGeometry",
    "EstimateSource",
    "LabelType",
    "LayoutPlan",
    "Partition",
    "PlanningContext",
    "Role",
    "RunMode",
    "RunOptions",
    "SizeEstimate",
]
