# bulkmerge/etl/truncate.py
import logging
from typing import Any, Optional

from ..cancellation import CancellationToken
from ..exceptions import MergeExecutionFailure, UnknownEntityType
from ..utils import quote_table_name

logger = logging.getLogger(__name__)

_TRUNCATE_SQL = '''
IF EXISTS (SELECT 1 FROM INFORMATION_SCHEMA.TABLES
           WHERE TABLE_NAME = :table_name
             AND TABLE_SCHEMA = COALESCE(:schema_name, SCHEMA_NAME()))
    TRUNCATE TABLE {table}
'''


def truncate(database, resolver, type_id: Any, cancel: Optional[CancellationToken] = None) -> bool:
    """
    Remove every row from the table mapped to ``type_id``.

    Does nothing when the type has no mapping or the table does not exist.

    Returns:
        True if a mapping was found and the statement was issued
    """
    try:
        descriptor = resolver.resolve(type_id)
    except UnknownEntityType:
        logger.info(f"No table mapping for {type_id!r}, nothing to truncate")
        return False

    if cancel is not None:
        cancel.raise_if_cancelled('truncate', table=descriptor.full_name)

    sql = _TRUNCATE_SQL.format(table=quote_table_name(descriptor.full_name))
    cursor = database.cursor()
    unregister = cancel.register(cursor.cancel) if cancel is not None else None
    try:
        with database.transaction():
            cursor.execute_named(sql, {'table_name': descriptor.table, 'schema_name': descriptor.schema})
    except database.interface.DatabaseError as e:
        logger.error(f"Truncate of {descriptor.full_name} failed: {e}")
        raise MergeExecutionFailure(str(e), table=descriptor.full_name, phase='truncate') from e
    finally:
        if unregister is not None:
            unregister()
    logger.info(f"Truncated {descriptor.full_name}")
    return True
