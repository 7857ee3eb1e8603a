"""Background work: the step timeout sweeper."""

from approval_batch.sweeper import SweepReport, WorkflowSweeper

__all__ = ["SweepReport", "WorkflowSweeper"]
