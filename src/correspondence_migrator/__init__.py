"""
Correspondence Migration Tool

Moves correspondences and their dependent records from the legacy source
system into the destination records-management system through a durable,
resumable, checkpointed phase workflow.
"""

from __future__ import annotations

from .aggregator import RelatedDataImporter, SourceDependentImporter
from .cli import main
from .engine import PhaseEngine
from .exceptions import DataIntegrityError, MigrationError, StepFailedError
from .models import Category, MigrationRecord, Outcome, Phase, RunReport, RunStatus, SubEntityImportStatus
from .pipelines import Pipeline, build_pipeline
from .retry import RetrySelector
from .runner import BatchRunner
from .store import SqlAlchemyStore
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "BatchRunner",
    "Category",
    "DataIntegrityError",
    "MigrationError",
    "MigrationRecord",
    "Outcome",
    "Phase",
    "PhaseEngine",
    "Pipeline",
    "RelatedDataImporter",
    "RetrySelector",
    "RunReport",
    "RunStatus",
    "SourceDependentImporter",
    "SqlAlchemyStore",
    "StepFailedError",
    "SubEntityImportStatus",
    "build_pipeline",
    "main",
    "setup_logging",
]
