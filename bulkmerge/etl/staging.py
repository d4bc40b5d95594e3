# bulkmerge/etl/staging.py
"""
Staging tables: structure-only clones of a target table that live for exactly
one merge.
"""

import itertools
import logging
import re
import secrets
import threading
import time
from textwrap import dedent
from typing import Optional

from ..defaults import settings
from ..exceptions import CleanupFailure, StagingCreationFailure
from ..schema import EntityDescriptor
from ..utils import quote_table_name, qualified_name, validate_table_name

logger = logging.getLogger(__name__)

_counter = itertools.count(1)
_counter_lock = threading.Lock()


def _unique_token() -> str:
    """Clock + process-wide sequence + random bits; unique across threads and processes."""
    with _counter_lock:
        seq = next(_counter)
    return f"{time.time_ns():x}_{seq:x}_{secrets.token_hex(4)}"


def staging_name(descriptor: EntityDescriptor, prefix: Optional[str] = None,
                 schema: Optional[str] = None) -> str:
    """
    Fresh staging table name for ``descriptor``'s target table.

    ``t_dbo_Orders_18c2f6a1b2c3d4e5_1f_9a0b1c2d``. The target name keeps it
    recognizable, the token keeps concurrent merges against the same table apart.
    """
    prefix = settings.get('staging_prefix', 't_') if prefix is None else prefix
    schema = settings.get('staging_schema') if schema is None else schema
    max_length = settings.get('max_identifier_length', 128)

    token = _unique_token()
    base = re.sub(r'\W+', '_', descriptor.full_name.replace('.', '_'))
    room = max_length - len(prefix) - len(token) - 1
    name = f"{prefix}{base[:room]}_{token}"
    return validate_table_name(qualified_name(name, schema))


class StagingTableManager:
    """
    Creates and drops staging tables on the merge cursor.

    The clone is taken with ``SELECT TOP 0 * INTO``. The ``UNION ALL`` branch
    keeps SQL Server from copying the IDENTITY property, so caller supplied key
    values can be loaded into the staging table as plain data.
    """

    def __init__(self, cursor):
        self.cursor = cursor

    def create_sql(self, descriptor: EntityDescriptor, staging: str) -> str:
        target = quote_table_name(descriptor.full_name)
        return dedent(f"""\
        SELECT TOP 0 * INTO {quote_table_name(staging)} FROM {target}
        UNION ALL
        SELECT TOP 0 * FROM {target}""")

    def drop_sql(self, staging: str) -> str:
        return f"DROP TABLE IF EXISTS {quote_table_name(staging)}"

    def create_staging(self, descriptor: EntityDescriptor, staging: str) -> None:
        driver_error = self.cursor.connection.interface.DatabaseError
        try:
            self.cursor.execute(self.create_sql(descriptor, staging))
        except driver_error as e:
            logger.error(f"Failed to create staging table {staging} from {descriptor.full_name}: {e}")
            raise StagingCreationFailure(str(e), table=descriptor.full_name, staging=staging) from e
        logger.debug(f"Created staging table {staging} from {descriptor.full_name}")

    def drop_if_exists(self, staging: str, table: Optional[str] = None) -> None:
        driver_error = self.cursor.connection.interface.DatabaseError
        try:
            self.cursor.execute(self.drop_sql(staging))
        except driver_error as e:
            raise CleanupFailure(str(e), table=table, staging=staging) from e
        logger.debug(f"Dropped staging table {staging}")
