from stackdeploy.deploy.cloudformation.deployer import CloudFormation
from stackdeploy.deploy.cloudformation.errors import (
    ChangeSetCreationFailed,
    ChangeSetDescribeFailed,
    ChangeSetError,
    ChangeSetExecuteFailed,
    ChangeSetWaitFailed,
    CloudFormationError,
    NotExecutableChangeSet,
    StackAlreadyExists,
    StackCreationFailed,
    StackDeletionFailed,
    StackNotFound,
    StackSetOperationFailed,
    StackSetOperationTimeout,
    StackUpdateFailed,
    StackUpdateInProgress,
)
from stackdeploy.deploy.cloudformation.stackset import StackSetOrchestrator

__all__ = [
    "ChangeSetCreationFailed",
    "ChangeSetDescribeFailed",
    "ChangeSetError",
    "ChangeSetExecuteFailed",
    "ChangeSetWaitFailed",
    "CloudFormation",
    "CloudFormationError",
    "NotExecutableChangeSet",
    "StackAlreadyExists",
    "StackCreationFailed",
    "StackDeletionFailed",
    "StackNotFound",
    "StackSetOperationFailed",
    "StackSetOperationTimeout",
    "StackSetOrchestrator",
    "StackUpdateFailed",
    "StackUpdateInProgress",
]
