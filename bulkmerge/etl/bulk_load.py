# bulkmerge/etl/bulk_load.py
import logging
from typing import Optional, Sequence

from ..cancellation import CancellationToken
from ..exceptions import BulkLoadFailure
from ..utils import quote_identifier, quote_table_name, wrap_at_comma
from .projection import TabularBuffer

logger = logging.getLogger(__name__)


def insert_statement(staging: str, column_names: Sequence[str], placeholder: str = '?') -> str:
    """``INSERT INTO staging (cols) VALUES (?, ...)`` with every column named."""
    cols = ', '.join(quote_identifier(col) for col in column_names)
    placeholders = ', '.join([placeholder] * len(column_names))
    if len(column_names) > 4:
        cols = wrap_at_comma(cols)
        placeholders = wrap_at_comma(placeholders)
    return f"INSERT INTO {quote_table_name(staging)} ({cols})\nVALUES ({placeholders})"


class BulkLoader:
    """
    Streams a TabularBuffer into a staging table with batched executemany().

    Columns are matched by name: the INSERT names every column it writes, so
    the staging table's physical column order does not matter. With pyodbc,
    ``fast_executemany`` is switched on and each batch goes over as one
    parameter array.

    Example
    -------
    ::

        loader = BulkLoader(cursor, batch_size=5000)
        loaded = loader.load('t_dbo_Orders_...', buffer)
    """

    def __init__(self, cursor, batch_size: Optional[int] = None):
        self.cursor = cursor
        self.batch_size = batch_size or getattr(cursor, 'batch_size', None) or 1000
        self.total_loaded = 0

    def insert_sql(self, staging: str, column_names: Sequence[str]) -> str:
        return insert_statement(staging, column_names, self.cursor.placeholder)

    def load(self, staging: str, buffer: TabularBuffer,
             column_names: Optional[Sequence[str]] = None,
             cancel: Optional[CancellationToken] = None,
             table: Optional[str] = None) -> int:
        """
        Load ``buffer`` into ``staging``.

        Args:
            staging: Staging table name
            buffer: Rows to transfer
            column_names: Subset of buffer columns to write (default: all)
            cancel: Checked before every batch
            table: Target table name, for error context

        Returns:
            Number of rows loaded

        Raises:
            BulkLoadFailure: on any driver error
            MergeCancelled: when ``cancel`` fires between batches
        """
        column_names = tuple(column_names or buffer.column_names)
        self.total_loaded = 0
        if not len(buffer):
            logger.debug(f"Nothing to load into {staging}")
            return 0

        sql = self.insert_sql(staging, column_names)
        rows = buffer.rows if column_names == buffer.column_names else buffer.select(column_names)
        self.cursor.enable_fast_executemany()
        driver_error = self.cursor.connection.interface.DatabaseError

        for start in range(0, len(rows), self.batch_size):
            if cancel is not None:
                cancel.raise_if_cancelled('load', table=table, staging=staging)
            batch = rows[start:start + self.batch_size]
            try:
                self.cursor.executemany(sql, batch)
            except driver_error as e:
                logger.error(f"Bulk load into {staging} failed after {self.total_loaded:,} rows: {e}")
                raise BulkLoadFailure(str(e), table=table, staging=staging) from e
            self.total_loaded += len(batch)

        logger.debug(f"Loaded {self.total_loaded:,} rows into {staging}")
        return self.total_loaded
