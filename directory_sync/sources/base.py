"""
Source reader interface.

A source yields rows; each row names the group it applies to (or None when the
job supplies the group) and carries raw (identity, role) entries already split
from any multi-value cells.
"""

from abc import ABC, abstractmethod
from typing import List, NamedTuple, Optional, Tuple

from directory_sync.models import Role


class SourceError(Exception):
    """Raised when a remote source cannot be read."""
    pass


class SourceRow(NamedTuple):
    group: Optional[str]
    entries: Tuple[Tuple[Optional[str], Role], ...]
    line_number: Optional[int] = None


class SourceReader(ABC):
    """Reads the desired membership for a job."""

    @abstractmethod
    def read(self) -> List[SourceRow]:
        pass

    def describe(self) -> str:
        return self.__class__.__name__
