"""
Errors raised by the CloudFormation deployers.

Exception Hierarchy:
    CloudFormationError (base)
    ├── StackAlreadyExists - create against a stack that exists and is not recoverable
    ├── StackUpdateInProgress - another operation is running against the stack
    ├── StackNotFound - the stack does not exist
    ├── StackCreationFailed - the stack did not reach CREATE_COMPLETE
    ├── StackUpdateFailed - the stack did not reach UPDATE_COMPLETE
    ├── StackDeletionFailed - a stack could not be deleted
    ├── ChangeSetCreationFailed - the change set could not be requested
    ├── ChangeSetError - an operation on an existing change set failed
    │   ├── ChangeSetWaitFailed
    │   ├── ChangeSetDescribeFailed
    │   └── ChangeSetExecuteFailed
    ├── NotExecutableChangeSet - the change set cannot be executed (and is not a no-op)
    └── StackSetOperationFailed - a stack set operation did not succeed
        └── StackSetOperationTimeout

Provider errors are chained as ``__cause__`` and kept in the ``cause`` attribute.
"""
from typing import TYPE_CHECKING, Optional

from stackdeploy.aws.api.cloudformation import StackEvents, StackSetOperationResultSummary

if TYPE_CHECKING:
    from stackdeploy.deploy.cloudformation.stack import ChangeSet


class CloudFormationError(Exception):
    """Base class of all deployment errors."""


class StackAlreadyExists(CloudFormationError):
    def __init__(self, stack_name: str):
        self.stack_name = stack_name
        super().__init__(f"stack {stack_name} already exists")


class StackUpdateInProgress(CloudFormationError):
    """Raised when a stack cannot be deployed to because another operation is still running against it."""

    def __init__(self, stack_name: str, status: str):
        self.stack_name = stack_name
        self.status = status
        super().__init__(
            f"stack {stack_name} is currently being updated (status {status}) and cannot be deployed to"
        )


class StackNotFound(CloudFormationError):
    def __init__(self, stack_name: str):
        self.stack_name = stack_name
        super().__init__(f"failed to find a stack named {stack_name}")


class StackCreationFailed(CloudFormationError):
    """
    Raised when a stack does not reach ``CREATE_COMPLETE``.

    Attributes:
        stack_name: the name of the stack
        cause: the error of the waiter
        events: the stack events of resources that failed to create, newest first
    """

    def __init__(self, stack_name: str, cause: Exception, events: Optional[StackEvents] = None):
        self.stack_name = stack_name
        self.cause = cause
        self.events = events or []
        super().__init__(f"failed to create stack {stack_name}: {cause}")


class StackUpdateFailed(CloudFormationError):
    """Raised when a stack does not reach ``UPDATE_COMPLETE``. Attributes as in ``StackCreationFailed``."""

    def __init__(self, stack_name: str, cause: Exception, events: Optional[StackEvents] = None):
        self.stack_name = stack_name
        self.cause = cause
        self.events = events or []
        super().__init__(f"failed to update stack {stack_name}: {cause}")


class StackDeletionFailed(CloudFormationError):
    def __init__(self, stack_name: str, cause: Exception, message: str = None):
        self.stack_name = stack_name
        self.cause = cause
        message = message or f"deleting stack {stack_name}"
        super().__init__(f"{message}: {cause}")


class ChangeSetCreationFailed(CloudFormationError):
    def __init__(self, stack_name: str, cause: Exception):
        self.stack_name = stack_name
        self.cause = cause
        super().__init__(f"failed to create changeSet for stack {stack_name}: {cause}")


class ChangeSetError(CloudFormationError):
    message = "failed to operate on changeSet {change_set}: {cause}"

    def __init__(self, change_set: "ChangeSet", cause: Exception):
        self.change_set = change_set
        self.cause = cause
        super().__init__(self.message.format(change_set=change_set, cause=cause))


class ChangeSetWaitFailed(ChangeSetError):
    """
    Raised when a change set did not finish creating. If the change set could be described afterwards, its
    execution status and status reason are appended to the message.
    """

    message = "failed to wait for changeSet creation {change_set}: {cause}"

    def __init__(self, change_set: "ChangeSet", cause: Exception):
        super().__init__(change_set, cause)
        if change_set.execution_status or change_set.status_reason:
            self.args = (
                f"{self.args[0]} (execution status {change_set.execution_status}, "
                f"reason {change_set.status_reason})",
            )


class ChangeSetDescribeFailed(ChangeSetError):
    message = "failed to describe changeSet {change_set}: {cause}"


class ChangeSetExecuteFailed(ChangeSetError):
    message = "failed to execute changeSet {change_set}: {cause}"


class NotExecutableChangeSet(CloudFormationError):
    """
    Raised when a change set cannot be executed for a reason other than having nothing to deploy.
    Carries the change set, with its id, stack id, execution status and status reason, for triage.
    """

    def __init__(self, change_set: "ChangeSet"):
        self.change_set = change_set
        super().__init__(
            f"cannot execute change set {change_set} because status is "
            f"{change_set.execution_status} with reason {change_set.status_reason}"
        )

    @property
    def status_reason(self) -> Optional[str]:
        return self.change_set.status_reason

    @property
    def execution_status(self) -> Optional[str]:
        return self.change_set.execution_status


class StackSetOperationFailed(CloudFormationError):
    """
    Raised when a stack set operation ends in a status other than ``SUCCEEDED``.

    Attributes:
        stack_set_name: the name of the stack set
        operation_id: the id of the failed operation
        status: the terminal status of the operation
        results: the per account and region results which did not succeed
    """

    def __init__(
        self,
        stack_set_name: str,
        operation_id: str,
        status: str,
        results: Optional[list[StackSetOperationResultSummary]] = None,
        message: Optional[str] = None,
    ):
        self.stack_set_name = stack_set_name
        self.operation_id = operation_id
        self.status = status
        self.results = results or []
        message = message or (
            f"operation {operation_id} for stack set {stack_set_name} ended with status {status}"
        )
        reasons = [
            f"{r.get('Account')}/{r.get('Region')}: {r.get('StatusReason') or r.get('Status')}"
            for r in self.results
        ]
        if reasons:
            message += ": " + "; ".join(reasons)
        super().__init__(message)

    @property
    def reasons(self) -> list[str]:
        return [r.get("StatusReason") for r in self.results if r.get("StatusReason")]


class StackSetOperationTimeout(StackSetOperationFailed):
    def __init__(self, stack_set_name: str, operation_id: str, status: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            stack_set_name,
            operation_id,
            status,
            message=f"operation {operation_id} for stack set {stack_set_name} did not finish within "
            f"{timeout} seconds (last status {status})",
        )
