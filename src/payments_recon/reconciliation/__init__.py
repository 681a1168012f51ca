"""Statement reconciliation, ledger diagnostics and the statement listing."""

from .diagnostics import DiagnosticsAnalyzer
from .models import (
    Diagnosis,
    DiagnosisRecord,
    DiagnosticsReport,
    DiscrepancyRecord,
    DiscrepancyType,
    LedgerEntry,
    MatchedRecord,
    ReconciliationReport,
    ReconciliationRequest,
    ReconciliationStatus,
    SideSummary,
    StatementEntry,
    UnmatchedRecord,
)
from .reconciler import Reconciler
from .report import ReportGenerator, diagnostics_to_text
from .service import ReconciliationService
from .statement_reader import StatementCursor, StatementPage, StatementReader

__all__ = [
    "Diagnosis",
    "DiagnosisRecord",
    "DiagnosticsAnalyzer",
    "DiagnosticsReport",
    "DiscrepancyRecord",
    "DiscrepancyType",
    "LedgerEntry",
    "MatchedRecord",
    "ReconciliationReport",
    "ReconciliationRequest",
    "ReconciliationService",
    "ReconciliationStatus",
    "Reconciler",
    "ReportGenerator",
    "SideSummary",
    "StatementCursor",
    "StatementEntry",
    "StatementPage",
    "StatementReader",
    "UnmatchedRecord",
    "diagnostics_to_text",
]
