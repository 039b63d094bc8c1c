"""Source readers producing the desired membership rows for a job."""

from .base import SourceError, SourceReader, SourceRow
