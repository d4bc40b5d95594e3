# bulkmerge/__init__.py
"""
bulkmerge - set-based bulk upserts into SQL Server

Merges a collection of typed records into their target table in one
transaction: the rows are bulk loaded into a staging table cloned from the
target, a single MERGE inserts new rows and updates existing ones, and the
staging table is dropped whatever happens.

Basic usage::

    import bulkmerge
    from bulkmerge import SchemaRegistry, bulk_merge

    registry = SchemaRegistry()
    registry.register_dataclass(Order, table='Orders', schema='dbo',
                                primary_key=['id'], generated=['id'])

    with bulkmerge.connect('warehouse') as db:
        result = bulk_merge(db, registry, Order, orders)
        print(result)

Direct connections:
    from bulkmerge.database import sqlserver

    db = sqlserver(user='loader', password='secret', database='Warehouse', host='sql01')
"""

__version__ = '0.3.0'

from .database import Database, sqlserver
from .config import connect, set_config_file, get_setting
from .cursors import Cursor
from .cancellation import CancellationToken
from .schema import ColumnDescriptor, EntityDescriptor, SchemaRegistry
from .etl import MergeCoordinator, MergeResult, bulk_merge, truncate
from .logging_utils import setup_logging, errors_logged, cleanup_old_logs
from . import exceptions

__all__ = [
    'connect',
    'set_config_file',
    'get_setting',
    'Database',
    'sqlserver',
    'Cursor',
    'CancellationToken',
    'ColumnDescriptor',
    'EntityDescriptor',
    'SchemaRegistry',
    'MergeCoordinator',
    'MergeResult',
    'bulk_merge',
    'truncate',
    'exceptions',
    'setup_logging',
    'errors_logged',
    'cleanup_old_logs',
]
