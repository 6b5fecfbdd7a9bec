import datetime
import os
import platform
from typing import Optional, get_type_hints


class BackupMountError(Exception):
    """Base exception for backupmount module."""


class RepositoryError(BackupMountError):
    """Exception for repositories that cannot be opened or contain invalid records."""


class MountError(BackupMountError):
    """Exception for FUSE sessions that could not be established, served, or unmounted."""

    def __init__(self, message: str, errno: Optional[int] = None) -> None:
        super().__init__(message)
        self.errno = errno


def overrides(parentClass):
    """Simple decorator that checks that a method with the same name exists in the parent class"""
    # I tried typing.override (Python 3.12+), but support for it does not seem to be ideal (yet)
    # and portability also is an issue. https://github.com/google/pytype/issues/1915 Maybe in 3 years.

    def overrider(method):
        if platform.python_implementation() == 'PyPy':
            return method

        assert method.__name__ in dir(parentClass)
        parentMethod = getattr(parentClass, method.__name__)
        assert callable(parentMethod)

        if os.getenv('BACKUPMOUNT_CHECK_OVERRIDES', '').lower() not in ('1', 'yes', 'on', 'enable', 'enabled'):
            return method

        # If the parent is not typed, e.g., fusepy, then do not show errors for the typed derived class.
        parentTypes = get_type_hints(parentMethod)
        for argument, argumentType in get_type_hints(method).items():
            if argument in parentTypes:
                parentType = parentTypes[argument]
                assert argumentType == parentType, f"{method.__name__}: {argument}: {argumentType} != {parentType}"

        return method

    return overrider


def ceil_div(dividend, divisor):
    return -(dividend // -divisor)


def parse_timestamp(value: str) -> datetime.datetime:
    """
    Parses an RFC 3339 timestamp as written into snapshot records. Timestamps without time zone are
    interpreted as UTC. datetime.fromisoformat only understands the 'Z' suffix since Python 3.11.
    """
    if value.endswith(('Z', 'z')):
        value = value[:-1] + '+00:00'
    result = datetime.datetime.fromisoformat(value)
    if result.tzinfo is None:
        result = result.replace(tzinfo=datetime.timezone.utc)
    return result


def format_timestamp(value: datetime.datetime) -> str:
    """Inverse of parse_timestamp with second precision, e.g., 2024-01-02T03:04:05Z."""
    result = value.replace(microsecond=0).isoformat()
    if result.endswith('+00:00'):
        result = result[: -len('+00:00')] + 'Z'
    return result
