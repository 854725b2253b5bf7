from conductor.validation.approval import (
    CompletionProbe,
    has_approved_code_review,
    is_completed_from_execution,
    is_fully_implemented,
    is_implemented,
    is_task_approved,
)
from conductor.validation.changes import ChangeReport, git_changed_files, reconcile_changes
from conductor.validation.checklist import ChecklistReport, check_review_checklist
from conductor.validation.criteria import (
    CriteriaReport,
    CriterionResult,
    SuccessCriterion,
    parse_success_criteria,
    run_success_criteria,
)
from conductor.validation.strategy import (
    StrategyReport,
    check_implementation_strategy,
    parse_implementation_strategy,
)

__all__ = [
    "ChangeReport",
    "ChecklistReport",
    "CompletionProbe",
    "CriteriaReport",
    "CriterionResult",
    "StrategyReport",
    "SuccessCriterion",
    "check_implementation_strategy",
    "check_review_checklist",
    "git_changed_files",
    "has_approved_code_review",
    "is_completed_from_execution",
    "is_fully_implemented",
    "is_implemented",
    "is_task_approved",
    "parse_implementation_strategy",
    "parse_success_criteria",
    "reconcile_changes",
]
