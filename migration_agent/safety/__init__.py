"""Safety policy and forbidden-path matching."""

from .policy import (
    PROTECTED_BRANCHES,
    PolicyReport,
    TimeoutChecker,
    contains_forbidden_operation,
    create_safety_stop,
    default_safety_limits,
    generate_safe_branch_name,
    is_path_forbidden,
    is_protected_branch,
    perform_safety_check,
    recovery_options,
    render_safety_summary,
    should_trigger_safety_stop,
    step_forbidden_operation,
    validate_plan,
    validate_plan_step,
    validate_target_branch,
)

__all__ = [
    "PROTECTED_BRANCHES",
    "PolicyReport",
    "TimeoutChecker",
    "contains_forbidden_operation",
    "create_safety_stop",
    "default_safety_limits",
    "generate_safe_branch_name",
    "is_path_forbidden",
    "is_protected_branch",
    "perform_safety_check",
    "recovery_options",
    "render_safety_summary",
    "should_trigger_safety_stop",
    "step_forbidden_operation",
    "validate_plan",
    "validate_plan_step",
    "validate_target_branch",
]
