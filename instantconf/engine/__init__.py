"""
InstantConf — Correlation & Verification Engine

The CorrelationStore owns every observation of a run, the InvariantChecker
turns a transaction's observations into a Verdict, and the
VerificationEngine (``instantconf.engine.service``) drives a whole run.
"""

from instantconf.engine.checker import InvariantChecker
from instantconf.engine.store import CorrelationStore
from instantconf.engine.types import (
    FinalObservation,
    Finding,
    FindingKind,
    InclusionObservation,
    ObservationKind,
    ObservationSource,
    PreconfirmationObservation,
    Receipt,
    RunReport,
    Severity,
    SubmissionObservation,
    TransactionRecord,
    Verdict,
    VerdictOutcome,
)

__all__ = [
    "CorrelationStore",
    "InvariantChecker",
    "FinalObservation",
    "Finding",
    "FindingKind",
    "InclusionObservation",
    "ObservationKind",
    "ObservationSource",
    "PreconfirmationObservation",
    "Receipt",
    "RunReport",
    "Severity",
    "SubmissionObservation",
    "TransactionRecord",
    "Verdict",
    "VerdictOutcome",
]
