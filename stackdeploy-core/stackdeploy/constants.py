from stackdeploy.version import __version__

VERSION = __version__

# truthy and falsy strings used when parsing boolean environment variables
TRUE_STRINGS = ("1", "true", "True")
FALSE_STRINGS = ("0", "false", "False")

# strings with valid log levels for SD_LOG
LOG_LEVELS = ("trace", "debug", "info", "warn", "error", "warning")

# trace log level, configurable via $SD_LOG
SD_LOG_TRACE = "trace"
TRACE_LOG_LEVELS = [SD_LOG_TRACE]

# default region if neither the environment nor the boto session provide one
AWS_REGION_US_EAST_1 = "us-east-1"

# maximum number of pooled connections per boto client
MAX_POOL_CONNECTIONS = 50

# default waiter configuration for the native CloudFormation waiters.
# ~1 hour in total (5 * 720 = 3_600 seconds)
DEFAULT_WAITER_DELAY = 5
DEFAULT_WAITER_MAX_ATTEMPTS = 720

# default polling configuration for stack set operations, which have no native waiter
DEFAULT_STACK_SET_POLL_INTERVAL = 3
DEFAULT_STACK_SET_OPERATION_TIMEOUT = 3_600

DEFAULT_CHANGE_SET_NAME_PREFIX = "stackdeploy"