# bulkmerge/etl/projection.py
"""
Row-oriented projection of typed records onto an entity's columns.
"""

import logging
from collections.abc import Mapping
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple

from ..exceptions import ProjectionFailure
from ..schema import ColumnDescriptor, EntityDescriptor
from ..utils import batch_iterable

logger = logging.getLogger(__name__)


class TabularBuffer:
    """
    Column-ordered rows ready for a bulk transfer.

    Every row is a tuple with exactly one value per column, in column order.

    Example
    -------
    ::

        buffer = TabularProjector().project(orders, descriptor)
        buffer.column_names      # ('Id', 'Customer', 'Total')
        buffer.rows[0]           # (0, 'A', 10)
    """

    def __init__(self, columns: Sequence[ColumnDescriptor], rows: Optional[List[tuple]] = None):
        self.columns: Tuple[ColumnDescriptor, ...] = tuple(columns)
        self.rows: List[tuple] = []
        for row in rows or ():
            self.append(row)

    @property
    def column_names(self) -> Tuple[str, ...]:
        return tuple(col.name for col in self.columns)

    def append(self, row: Sequence[Any]) -> None:
        if len(row) != len(self.columns):
            raise ValueError(f"Row has {len(row)} values, expected {len(self.columns)}")
        self.rows.append(tuple(row))

    def index(self, column_name: str) -> int:
        try:
            return self.column_names.index(column_name)
        except ValueError:
            raise KeyError(f"Column '{column_name}' not in buffer")

    def select(self, column_names: Sequence[str]) -> List[tuple]:
        """Rows restricted to ``column_names``, in that order."""
        positions = [self.index(name) for name in column_names]
        return [tuple(row[pos] for pos in positions) for row in self.rows]

    def batches(self, size: int) -> Iterator[List[tuple]]:
        return batch_iterable(self.rows, size)

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[tuple]:
        return iter(self.rows)

    def __bool__(self) -> bool:
        # an empty buffer is still a valid buffer
        return True

    def __repr__(self) -> str:
        return f"TabularBuffer({len(self.columns)} columns, {len(self.rows):,} rows)"


def _get_value(record: Any, property_name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(property_name)
    return getattr(record, property_name, None)


class TabularProjector:
    """
    Converts typed records (dataclasses, plain objects or mappings) into a
    :class:`TabularBuffer` whose columns follow the descriptor's order.

    Unmapped properties and collection-valued properties never become
    columns. A property the record does not have yields None.
    """

    def projected_columns(self, descriptor: EntityDescriptor) -> Tuple[ColumnDescriptor, ...]:
        if not descriptor.columns:
            raise ProjectionFailure("descriptor has no columns", table=descriptor.full_name)
        columns = tuple(col for col in descriptor.columns if col.projectable)
        if not columns:
            raise ProjectionFailure("descriptor has no mapped scalar columns", table=descriptor.full_name)
        skipped = [col.name for col in descriptor.columns if not col.projectable]
        if skipped:
            logger.debug(f"{descriptor.full_name}: not projecting {', '.join(skipped)}")
        return columns

    def project(self, records: Iterable[Any], descriptor: EntityDescriptor) -> TabularBuffer:
        columns = self.projected_columns(descriptor)
        properties = [col.property_name for col in columns]
        buffer = TabularBuffer(columns)
        for record in records:
            buffer.rows.append(tuple(_get_value(record, prop) for prop in properties))
        logger.debug(f"Projected {len(buffer):,} records onto {descriptor.full_name}")
        return buffer
