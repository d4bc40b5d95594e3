# bulkmerge/etl/__init__.py
"""
Bulk merge (upsert) machinery.

- TabularProjector: typed records to column-ordered rows
- StagingTableManager: per-call staging tables cloned from the target
- BulkLoader: batched executemany() into the staging table
- MergeScriptBuilder: one set-based MERGE from staging into the target
- MergeCoordinator / bulk_merge: the transactional state machine tying them together
- truncate: empty a mapped table

Example
-------
::

    from bulkmerge.etl import bulk_merge

    result = bulk_merge(db, registry, Order, orders, batch_size=5000)
    print(result)
"""

from .projection import TabularBuffer, TabularProjector
from .staging import StagingTableManager, staging_name
from .bulk_load import BulkLoader
from .merge_script import MergePlan, MergeScriptBuilder
from .coordinator import MergeCoordinator, MergeResult, MergeState, bulk_merge
from .truncate import truncate

__all__ = [
    'TabularBuffer', 'TabularProjector', 'StagingTableManager', 'staging_name', 'BulkLoader',
    'MergePlan', 'MergeScriptBuilder', 'MergeCoordinator', 'MergeResult', 'MergeState',
    'bulk_merge', 'truncate'
]
