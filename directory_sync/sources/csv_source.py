"""
CSV source reader.

Supports the two layouts found in group exports:

* ``role_column`` - one member per row, as in the Google Workspace group member
  export (``Group Email``, ``Member Email``, ``Member Role``).
* ``multi_value`` - one group per row with delimiter-separated ``Members``,
  ``Owners`` and ``Managers`` cells.

Header names are matched case-insensitively after trimming.
"""

import csv
import logging
from typing import Any, Dict, List, Optional, Tuple

from directory_sync.config import ConfigurationError
from directory_sync.models import Role
from directory_sync.roster import split_multi_value
from .base import SourceReader, SourceRow

logger = logging.getLogger(__name__)

LAYOUTS = ('role_column', 'multi_value')

DEFAULT_COLUMNS = {
    'group': 'Group Email',
    'member': 'Member Email',
    'role': 'Member Role',
    'members': 'Members',
    'owners': 'Owners',
    'managers': 'Managers',
}


def _header_key(name: Optional[str]) -> str:
    return (name or '').strip().lower()


class CsvSourceReader(SourceReader):
    """Reads group membership rows from a CSV export."""

    def __init__(self, path: str, layout: str = 'role_column', columns: Optional[Dict[str, str]] = None,
                 group: Optional[str] = None, delimiter: str = ',', encoding: str = 'utf-8-sig'):
        """
        Args:
            path: CSV file path
            layout: 'role_column' or 'multi_value'
            columns: Overrides for DEFAULT_COLUMNS
            group: Fixed destination group; the group column is then not required
            delimiter: CSV field delimiter
            encoding: File encoding ('utf-8-sig' accepts a byte order mark)
        """
        if layout not in LAYOUTS:
            raise ConfigurationError(f"Unknown CSV layout '{layout}', expected one of {', '.join(LAYOUTS)}")
        self.path = path
        self.layout = layout
        self.columns = dict(DEFAULT_COLUMNS)
        self.columns.update(columns or {})
        self.group = group
        self.delimiter = delimiter
        self.encoding = encoding

    @classmethod
    def from_config(cls, source_config: Dict[str, Any], group: Optional[str] = None) -> 'CsvSourceReader':
        return cls(
            path=source_config['path'],
            layout=source_config.get('layout', 'role_column'),
            columns=source_config.get('columns'),
            group=group,
            delimiter=source_config.get('delimiter', ','),
            encoding=source_config.get('encoding', 'utf-8-sig'),
        )

    def describe(self) -> str:
        return f"CSV {self.path} ({self.layout})"

    def _read_table(self) -> Tuple[List[str], Dict[str, int], List[Tuple[int, List[str]]]]:
        """
        Read the header and the non-blank data rows.

        Raises:
            ConfigurationError: If the file cannot be read or has no header
        """
        try:
            with open(self.path, 'r', newline='', encoding=self.encoding) as f:
                reader = csv.reader(f, delimiter=self.delimiter)
                header = next(reader, None)
                rows = [
                    (line_number, row) for line_number, row in enumerate(reader, start=2)
                    if any(cell.strip() for cell in row)
                ]
        except FileNotFoundError:
            raise ConfigurationError(f"CSV file not found: {self.path}")
        except (OSError, UnicodeDecodeError, csv.Error) as e:
            raise ConfigurationError(f"Cannot read CSV file {self.path}: {e}")

        if not header:
            raise ConfigurationError(f"CSV file {self.path} is empty")

        index = {}
        for position, name in enumerate(header):
            index.setdefault(_header_key(name), position)

        logger.debug(f"Read {len(rows)} rows from {self.path} with columns {header}")
        return header, index, rows

    def _column(self, index: Dict[str, int], name: str) -> Optional[int]:
        return index.get(_header_key(self.columns[name]))

    def _require_columns(self, index: Dict[str, int], names: List[str]):
        missing = [self.columns[name] for name in names if self._column(index, name) is None]
        if missing:
            raise ConfigurationError(f"CSV file {self.path} is missing required columns: {', '.join(missing)}")

    @staticmethod
    def _cell(row: List[str], position: Optional[int]) -> str:
        if position is None or position >= len(row):
            return ''
        return row[position]

    def read(self) -> List[SourceRow]:
        _, index, rows = self._read_table()

        required = [] if self.group else ['group']
        if self.layout == 'role_column':
            required.append('member')
        self._require_columns(index, required)

        group_col = self._column(index, 'group')
        result = []

        if self.layout == 'role_column':
            member_col = self._column(index, 'member')
            role_col = self._column(index, 'role')
            for line_number, row in rows:
                entry = (self._cell(row, member_col), Role.parse(self._cell(row, role_col)))
                group = self.group or self._cell(row, group_col)
                result.append(SourceRow(group, (entry,), line_number))
        else:
            role_columns = [(self._column(index, name), role) for name, role in
                            (('members', Role.MEMBER), ('owners', Role.OWNER), ('managers', Role.OWNER))]
            if all(position is None for position, _ in role_columns):
                raise ConfigurationError(
                    f"CSV file {self.path} has none of the columns "
                    f"{self.columns['members']}, {self.columns['owners']}, {self.columns['managers']}"
                )
            for line_number, row in rows:
                entries = tuple(
                    (token, role)
                    for position, role in role_columns
                    for token in split_multi_value(self._cell(row, position))
                )
                group = self.group or self._cell(row, group_col)
                result.append(SourceRow(group, entries, line_number))

        logger.info(f"Read {len(result)} rows from {self.describe()}")
        return result

    def read_records(self, required: List[str]) -> List[Tuple[int, Dict[str, str]]]:
        """
        Read rows as dictionaries keyed by the trimmed header names.

        Args:
            required: Header names that must be present

        Returns:
            (line number, record) pairs
        """
        header, index, rows = self._read_table()
        missing = [name for name in required if _header_key(name) not in index]
        if missing:
            raise ConfigurationError(f"CSV file {self.path} is missing required columns: {', '.join(missing)}")

        names = [name.strip() for name in header]

        return [
            (line_number, {name: self._cell(row, position) for position, name in enumerate(names)})
            for line_number, row in rows
        ]
