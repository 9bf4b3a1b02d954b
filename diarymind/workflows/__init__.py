"""Durable extraction and consolidation workflows."""

from diarymind.workflows.consolidation import ConsolidationOutcome, MemoryConsolidationWorkflow
from diarymind.workflows.extraction import ExtractionOutcome, MemoryExtractionWorkflow
from diarymind.workflows.runner import StepContext, StepPolicy, WorkflowRun, WorkflowRunner

__all__ = [
    "ConsolidationOutcome",
    "ExtractionOutcome",
    "MemoryConsolidationWorkflow",
    "MemoryExtractionWorkflow",
    "StepContext",
    "StepPolicy",
    "WorkflowRun",
    "WorkflowRunner",
]
