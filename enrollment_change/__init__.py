"""Reconcile two yearly enrollment snapshots and compute change metrics."""

from .build_enrollment_change import PipelineResult, run_pipeline
from .data_sources import Snapshot

__all__ = ["PipelineResult", "Snapshot", "run_pipeline"]
