"""
Log record formatting of stackdeploy.

Deployment log calls may pass the stack (or stack set) they act on as ``extra={"stack_name": ...}``. The
``AddFormattedAttributes`` filter renders it as a ``[stack]`` prefix of the message, so interleaved logs of
concurrent deployments can be told apart.
"""
import logging
from functools import lru_cache

MAX_THREAD_NAME_LEN = 12
MAX_NAME_LEN = 26

LOG_FORMAT = (
    f"%(asctime)s.%(msecs)03d %(sd_level)5s --- [%(sd_thread){MAX_THREAD_NAME_LEN}s] "
    f"%(sd_name)-{MAX_NAME_LEN}s : %(sd_stack)s%(message)s"
)
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# level names that do not fit into five characters
SHORT_LEVEL_NAMES = {
    logging.CRITICAL: "FATAL",
    logging.WARNING: "WARN",
}


class DefaultFormatter(logging.Formatter):
    """Formats records with ``LOG_FORMAT``. Records must have passed ``AddFormattedAttributes``."""

    def __init__(self, fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT):
        super().__init__(fmt=fmt, datefmt=datefmt)


class AddFormattedAttributes(logging.Filter):
    """
    Adds the attributes used by ``LOG_FORMAT`` to every record:

    - sd_level: the level name, at most five characters
    - sd_name: the logger name, compressed to ``max_name_len`` (e.g. ``s.d.c.deployer``)
    - sd_thread: the last ``max_thread_len`` characters of the thread name
    - sd_stack: ``[<stack_name>] `` if the record carries a stack name, otherwise empty
    """

    def __init__(self, max_name_len: int = None, max_thread_len: int = None):
        super().__init__()
        self.max_name_len = max_name_len or MAX_NAME_LEN
        self.max_thread_len = max_thread_len or MAX_THREAD_NAME_LEN

    def filter(self, record):
        record.sd_level = SHORT_LEVEL_NAMES.get(record.levelno, record.levelname)
        record.sd_name = self._compressed_name(record.name)
        record.sd_thread = record.threadName[-self.max_thread_len :]
        stack_name = getattr(record, "stack_name", None)
        record.sd_stack = f"[{stack_name}] " if stack_name else ""
        return True

    @lru_cache(maxsize=256)
    def _compressed_name(self, name):
        return compress_logger_name(name, self.max_name_len)


def stack_context(stack_name: str) -> dict:
    """Returns the ``extra`` of a log call about the given stack."""
    return {"stack_name": stack_name}


def compress_logger_name(name: str, length: int) -> str:
    """
    Shortens a dotted logger name to at most ``length`` characters, if possible.

    Outer parts are abbreviated to their first letter, starting with the outermost, until the name fits. If it still
    does not fit, the innermost part is cut, keeping at least one of its characters. For example
    ``my.very.long.logger.name`` with length 17 becomes ``m.v.l.logger.name``.
    """
    if len(name) <= length:
        return name

    parts = name.split(".")
    for i in range(len(parts) - 1):
        parts[i] = parts[i][0]
        compressed = ".".join(parts)
        if len(compressed) <= length:
            return compressed

    head, innermost = parts[:-1], parts[-1]
    room = length - len(".".join(head)) - 1 if head else length
    return ".".join(head + [innermost[: max(room, 1)]])
