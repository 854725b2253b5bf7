from conductor.execution.artifacts import (
    ArtifactCheck,
    RecoveryReport,
    recover_from_hallucination,
    verify_artifacts_exist,
)
from conductor.execution.completion import CompletionReason, CompletionReport, validate_completion
from conductor.execution.legacy import LegacyExecutor
from conductor.execution.machine import ExecutionOutcome, TaskExecutor
from conductor.execution.phases import (
    check_phase_gate,
    enforce_phase_gate,
    register_reported_uncertainties,
    resolve_uncertainty,
    track_artifacts,
    track_uncertainty,
    update_phase_progress,
)
from conductor.execution.preconditions import PreconditionOutcome, verify_preconditions
from conductor.execution.record import (
    append_error,
    load_execution,
    new_execution,
    save_execution,
    validate_execution,
)
from conductor.execution.security import is_dangerous_command

__all__ = [
    "ArtifactCheck",
    "CompletionReason",
    "CompletionReport",
    "ExecutionOutcome",
    "LegacyExecutor",
    "PreconditionOutcome",
    "RecoveryReport",
    "TaskExecutor",
    "append_error",
    "check_phase_gate",
    "enforce_phase_gate",
    "is_dangerous_command",
    "load_execution",
    "new_execution",
    "recover_from_hallucination",
    "register_reported_uncertainties",
    "resolve_uncertainty",
    "save_execution",
    "track_artifacts",
    "track_uncertainty",
    "update_phase_progress",
    "validate_completion",
    "validate_execution",
    "verify_artifacts_exist",
    "verify_preconditions",
]
