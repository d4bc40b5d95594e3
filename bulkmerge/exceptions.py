# bulkmerge/exceptions.py
"""
Exceptions raised by the merge engine.

Every error carries the target table, the staging table (when one was chosen)
and the phase that failed, so a failure can be diagnosed from the message alone::

    BulkLoadFailure: [load] dbo.Orders via t_dbo_Orders_18c2f...: Arithmetic overflow ...

Configuration errors (``UnknownEntityType``, ``ProjectionFailure``,
``NoWritableColumns``) are raised before anything touches the database.
``StagingCreationFailure``, ``BulkLoadFailure`` and ``MergeExecutionFailure``
are raised after the transaction was rolled back. ``CleanupFailure`` is never
raised over another error; it is attached to it as ``cleanup_error``.
"""

from typing import Optional


class MergeError(Exception):
    """Base class for all bulkmerge errors."""

    phase = 'merge'

    def __init__(self, message: str, table: Optional[str] = None,
                 staging: Optional[str] = None, phase: Optional[str] = None):
        self.message = message
        self.table = table
        self.staging = staging
        if phase is not None:
            self.phase = phase
        # secondary failure from dropping the staging table, if any
        self.cleanup_error: Optional['CleanupFailure'] = None
        super().__init__(self._format())

    def _format(self) -> str:
        context = self.table or ''
        if self.staging:
            context = f"{context} via {self.staging}" if context else self.staging
        prefix = f"[{self.phase}] "
        if context:
            prefix += f"{context}: "
        return prefix + self.message


class UnknownEntityType(MergeError, LookupError):
    """No table mapping is registered for the requested type."""
    phase = 'resolve'


class ProjectionFailure(MergeError, ValueError):
    """The entity descriptor cannot be projected (no usable columns)."""
    phase = 'project'


class NoWritableColumns(ProjectionFailure):
    """Every projected column is server generated, nothing can be inserted."""
    phase = 'plan'


class StagingCreationFailure(MergeError):
    phase = 'create_staging'


class BulkLoadFailure(MergeError):
    phase = 'load'


class MergeExecutionFailure(MergeError):
    phase = 'merge'


class CleanupFailure(MergeError):
    """Dropping the staging table failed. Reported, never raised over a primary error."""
    phase = 'cleanup'


class MergeCancelled(MergeError):
    """The cancellation token fired before the merge committed."""
    phase = 'cancelled'
