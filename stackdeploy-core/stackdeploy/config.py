import logging
import os
from typing import Optional, Union

from stackdeploy.constants import (
    DEFAULT_CHANGE_SET_NAME_PREFIX,
    DEFAULT_STACK_SET_OPERATION_TIMEOUT,
    DEFAULT_STACK_SET_POLL_INTERVAL,
    DEFAULT_WAITER_DELAY,
    DEFAULT_WAITER_MAX_ATTEMPTS,
    FALSE_STRINGS,
    LOG_LEVELS,
    TRACE_LOG_LEVELS,
    TRUE_STRINGS,
)


def eval_log_type(env_var_name: str) -> Union[str, bool]:
    """Get the log type from environment variable"""
    sd_log = os.environ.get(env_var_name, "").lower().strip()
    return sd_log if sd_log in LOG_LEVELS else False


def parse_boolean_env(env_var_name: str) -> Optional[bool]:
    """Parse the value of the given env variable and return True/False, or None if it is not a boolean value."""
    value = os.environ.get(env_var_name, "").lower().strip()
    if value in TRUE_STRINGS:
        return True
    if value in FALSE_STRINGS:
        return False
    return None


def is_env_true(env_var_name: str) -> bool:
    """Whether the given environment variable has a truthy value."""
    return os.environ.get(env_var_name, "").lower().strip() in TRUE_STRINGS


def is_env_not_false(env_var_name: str) -> bool:
    """Whether the given environment variable is empty or has a truthy value."""
    return os.environ.get(env_var_name, "").lower().strip() not in FALSE_STRINGS


def get_int_env(env_var_name: str, default: int) -> int:
    """Parse the given env variable as a positive integer, falling back to the default if unset or invalid."""
    value = os.environ.get(env_var_name, "").strip()
    if not value:
        return default
    try:
        result = int(value)
    except ValueError:
        logging.getLogger(__name__).warning(
            "Ignoring invalid value %r for %s, using %s", value, env_var_name, default
        )
        return default
    return result if result > 0 else default


# log level, one of LOG_LEVELS
SD_LOG = eval_log_type("SD_LOG")
DEBUG = is_env_true("DEBUG") or SD_LOG in TRACE_LOG_LEVELS

# delay (in seconds) between two polls of the native CloudFormation waiters
WAITER_DELAY = get_int_env("WAITER_DELAY", DEFAULT_WAITER_DELAY)

# maximum number of polls of the native CloudFormation waiters
WAITER_MAX_ATTEMPTS = get_int_env("WAITER_MAX_ATTEMPTS", DEFAULT_WAITER_MAX_ATTEMPTS)

# interval (in seconds) between two describe calls while waiting for a stack set operation
STACK_SET_POLL_INTERVAL = get_int_env("STACK_SET_POLL_INTERVAL", DEFAULT_STACK_SET_POLL_INTERVAL)

# total time (in seconds) to wait for a stack set operation before giving up
STACK_SET_OPERATION_TIMEOUT = get_int_env(
    "STACK_SET_OPERATION_TIMEOUT", DEFAULT_STACK_SET_OPERATION_TIMEOUT
)

# prefix of every generated change set name, must start with a letter
CHANGE_SET_NAME_PREFIX = (
    os.environ.get("CHANGE_SET_NAME_PREFIX", "").strip() or DEFAULT_CHANGE_SET_NAME_PREFIX
)

# endpoint used by the client factory instead of the regional AWS endpoint (e.g., a local emulator)
AWS_ENDPOINT_URL = os.environ.get("AWS_ENDPOINT_URL", "").strip() or None

# whether to disable the botocore retry handler for all created clients
DISABLE_BOTO_RETRIES = is_env_true("DISABLE_BOTO_RETRIES")


def is_trace_logging_enabled():
    if SD_LOG:
        log_level = str(SD_LOG).upper()
        return log_level.lower() in TRACE_LOG_LEVELS
    return False


def waiter_config() -> dict[str, int]:
    """Returns the ``WaiterConfig`` passed to every native CloudFormation waiter."""
    return {"Delay": WAITER_DELAY, "MaxAttempts": WAITER_MAX_ATTEMPTS}


# set log levels immediately, but will be overwritten later by setup_logging
if DEBUG:
    logging.getLogger("").setLevel(logging.DEBUG)
    logging.getLogger("stackdeploy").setLevel(logging.DEBUG)
