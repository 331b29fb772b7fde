"""
Classification of CloudFormation statuses and errors.

The provider does not expose typed signals for "the stack does not exist" or "the change set is empty", so these
checks match against the provider's free-text messages. All of that wording lives in this module.
"""
from typing import Optional

from botocore.exceptions import ClientError

from stackdeploy.aws.api.cloudformation import (
    ExecutionStatus,
    StackSetOperationStatus,
    StackStatus,
)
from stackdeploy.deploy.cloudformation.errors import StackNotFound

# error code the provider uses for invalid requests, including requests against missing stacks
VALIDATION_ERROR_CODE = "ValidationError"
STACK_SET_NOT_FOUND_ERROR_CODE = "StackSetNotFoundException"

# e.g. "Stack with id my-stack does not exist"
DOES_NOT_EXIST_PHRASE = "does not exist"

# status reasons of change sets which could not be executed because they would not change anything
NO_UPDATES_REASON = "No updates are to be performed."
NO_CHANGES_REASON = "didn't contain changes"
NO_OP_REASONS = (NO_UPDATES_REASON, NO_CHANGES_REASON)

TERMINAL_FAILURE_STATUSES = frozenset(
    {
        StackStatus.ROLLBACK_COMPLETE,
        StackStatus.ROLLBACK_FAILED,
        StackStatus.DELETE_FAILED,
    }
)

STACK_SET_OPERATION_TERMINAL_STATUSES = frozenset(
    {
        StackSetOperationStatus.SUCCEEDED,
        StackSetOperationStatus.FAILED,
        StackSetOperationStatus.STOPPED,
    }
)


def _error_code(error: Exception) -> Optional[str]:
    if not isinstance(error, ClientError):
        return None
    return error.response.get("Error", {}).get("Code")


def _error_message(error: Exception) -> str:
    if not isinstance(error, ClientError):
        return ""
    return error.response.get("Error", {}).get("Message") or ""


def stack_does_not_exist(error: Exception) -> bool:
    """
    Whether the given error means that the described stack does not exist.

    Only validation errors stating that the stack does not exist qualify. Any other error, including validation
    errors about malformed input, is a real failure.
    """
    if isinstance(error, StackNotFound):
        return True
    if _error_code(error) != VALIDATION_ERROR_CODE:
        return False
    return DOES_NOT_EXIST_PHRASE in _error_message(error)


def stack_set_does_not_exist(error: Exception) -> bool:
    """Whether the given error means that the described stack set does not exist."""
    return _error_code(error) == STACK_SET_NOT_FOUND_ERROR_CODE


def is_in_progress(status: Optional[str]) -> bool:
    return bool(status) and status.endswith("_IN_PROGRESS")


def is_terminal_failure(status: Optional[str]) -> bool:
    """
    Whether the stack is in a state from which it cannot progress without corrective action,
    i.e. any ``*_FAILED`` status, or a rolled back first creation (``ROLLBACK_COMPLETE``).
    """
    if not status:
        return False
    return status.endswith("_FAILED") or status in TERMINAL_FAILURE_STATUSES


def is_complete(status: Optional[str]) -> bool:
    """Whether the stack settled successfully, e.g. ``CREATE_COMPLETE`` or ``UPDATE_ROLLBACK_COMPLETE``."""
    if not status or is_terminal_failure(status):
        return False
    return status.endswith("_COMPLETE")


def is_no_op_reason(status_reason: Optional[str]) -> bool:
    if not status_reason:
        return False
    reason = status_reason.lower()
    return any(sentinel.lower() in reason for sentinel in NO_OP_REASONS)


def is_no_op_change_set(
    execution_status: Optional[str], status_reason: Optional[str], changes: Optional[list] = None
) -> bool:
    """
    Whether a change set is unavailable only because there is nothing to deploy.

    :param execution_status: the execution status of the change set
    :param status_reason: the status reason of the change set. Matched case-insensitively as a substring, since
        the provider appends details to its canonical messages
    :param changes: the changes of the change set, if known. An explicitly empty list marks a no-op if no
        reason is given
    """
    if execution_status != ExecutionStatus.UNAVAILABLE:
        return False
    if is_no_op_reason(status_reason):
        return True
    # without a reason, an empty diff is the only evidence of a no-op
    return not status_reason and changes is not None and len(changes) == 0


def is_stack_set_operation_terminal(status: Optional[str]) -> bool:
    return status in STACK_SET_OPERATION_TERMINAL_STATUSES


def is_stack_set_operation_success(status: Optional[str]) -> bool:
    return status == StackSetOperationStatus.SUCCEEDED
