import re
import uuid

_NON_ALPHANUMERIC = re.compile(r"[^A-Za-z0-9-]+")
_REPEATED_HYPHENS = re.compile(r"-{2,}")


def short_uid() -> str:
    return str(uuid.uuid4())[0:8]


def long_uid() -> str:
    return str(uuid.uuid4())


def to_resource_name_part(value: str) -> str:
    """
    Reduce the given string to characters allowed in CloudFormation resource names (alphanumerics and hyphens).
    Runs of other characters are replaced by a single hyphen, and leading/trailing hyphens are stripped.

    >>> to_resource_name_part("my_app/test env")
    'my-app-test-env'
    """
    value = _NON_ALPHANUMERIC.sub("-", value or "")
    value = _REPEATED_HYPHENS.sub("-", value)
    return value.strip("-")
