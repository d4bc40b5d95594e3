# bulkmerge/etl/coordinator.py
"""
MergeCoordinator - runs one bulk merge from typed records to a committed MERGE.

Steps, strictly in order::

    resolve -> project -> begin transaction -> create staging -> load
            -> merge -> commit -> drop staging

Everything up to the projection happens before the database is touched, so
configuration errors (unknown type, unusable descriptor) never leave anything
behind. Once the transaction is open every failure rolls it back, and the
staging table is dropped on every exit path.

Example
-------
::

    from bulkmerge import Database, SchemaRegistry, bulk_merge

    registry = SchemaRegistry()
    registry.register_dataclass(Order, table='Orders', schema='dbo',
                                primary_key=['id'], generated=['id'])

    result = bulk_merge(db, registry, Order, orders)
    print(result.rows_staged, result.rows_affected)
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from ..cancellation import CancellationToken
from ..defaults import settings
from ..exceptions import CleanupFailure, MergeCancelled, MergeError, MergeExecutionFailure
from .bulk_load import BulkLoader
from .merge_script import MergePlan, MergeScriptBuilder
from .projection import TabularProjector
from .staging import StagingTableManager, staging_name

logger = logging.getLogger(__name__)


class MergeState:
    """States of a single merge invocation."""
    IDLE = 'idle'
    SCHEMA_RESOLVED = 'schema_resolved'
    PROJECTED = 'projected'
    TRANSACTION_OPEN = 'transaction_open'
    STAGING_CREATED = 'staging_created'
    LOADED = 'loaded'
    MERGED = 'merged'
    COMMITTED = 'committed'
    FAILED = 'failed'
    CLEANED_UP = 'cleaned_up'

    TRANSACTIONAL = (TRANSACTION_OPEN, STAGING_CREATED, LOADED, MERGED)
    TRANSITIONS = {
        IDLE: (SCHEMA_RESOLVED,),
        SCHEMA_RESOLVED: (PROJECTED,),
        PROJECTED: (TRANSACTION_OPEN,),
        TRANSACTION_OPEN: (STAGING_CREATED, FAILED),
        STAGING_CREATED: (LOADED, FAILED),
        LOADED: (MERGED, FAILED),
        MERGED: (COMMITTED, FAILED),
        COMMITTED: (CLEANED_UP,),
        FAILED: (CLEANED_UP,),
        CLEANED_UP: (),
    }

    @classmethod
    def can_transition(cls, current: str, new: str) -> bool:
        return new in cls.TRANSITIONS.get(current, ())


@dataclass
class MergeResult:
    """Outcome of one merge call."""

    table: Optional[str] = None
    staging_name: Optional[str] = None
    state: str = MergeState.IDLE
    rows_staged: int = 0
    rows_affected: int = -1
    elapsed: float = 0.0
    cleaned_up: bool = False
    error: Optional[MergeError] = None
    cleanup_error: Optional[CleanupFailure] = None
    history: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def __str__(self) -> str:
        status = 'ok' if self.ok else f'failed: {self.error}'
        return (f"MergeResult({self.table} <staged: {self.rows_staged:,}; "
                f"affected: {self.rows_affected:,}; {self.elapsed:.2f}s; {status}>)")


class MergeCoordinator:
    """
    Drives the merge state machine for one database connection.

    A coordinator handles one merge at a time; concurrent callers each use
    their own coordinator (and ideally their own connection). Staging tables
    are uniquely named per call, so merges into the same target from several
    processes do not collide.

    Args:
        database: bulkmerge Database
        resolver: Anything with ``resolve(type_id) -> EntityDescriptor``,
            usually a :class:`~bulkmerge.schema.SchemaRegistry`
        batch_size: Rows per executemany() during the bulk load
        update_key_columns: Write key columns in WHEN MATCHED too
            (default: settings['update_key_columns'])
        staging_schema: Schema for staging tables (default: settings['staging_schema'])
        staging_prefix: Prefix for staging table names (default: settings['staging_prefix'])
    """

    def __init__(self, database, resolver, batch_size: Optional[int] = None,
                 update_key_columns: Optional[bool] = None,
                 staging_schema: Optional[str] = None,
                 staging_prefix: Optional[str] = None):
        self.database = database
        self.resolver = resolver
        self.batch_size = batch_size or settings.get('default_batch_size', 1000)
        self.update_key_columns = update_key_columns
        self.staging_schema = staging_schema
        self.staging_prefix = staging_prefix
        self.projector = TabularProjector()
        self.script_builder = MergeScriptBuilder()
        self.state = MergeState.IDLE
        self.history: List[str] = [MergeState.IDLE]

    def _transition(self, new_state: str) -> None:
        if not MergeState.can_transition(self.state, new_state):
            raise RuntimeError(f"Illegal merge state transition: {self.state} -> {new_state}")
        logger.debug(f"Merge state {self.state} -> {new_state}")
        self.state = new_state
        self.history.append(new_state)

    def _reset(self) -> None:
        self.state = MergeState.IDLE
        self.history = [MergeState.IDLE]

    @staticmethod
    def _check(cancel: Optional[CancellationToken], phase: str, result: MergeResult) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled(phase, table=result.table, staging=result.staging_name)

    def merge(self, type_id: Any, records: Iterable[Any],
              cancel: Optional[CancellationToken] = None,
              raise_error: bool = True) -> MergeResult:
        """
        Insert new rows and update existing ones in the target table of ``type_id``.

        Args:
            type_id: Record type (class or registered name)
            records: Records to merge; consumed once
            cancel: Optional cancellation token checked before every step
            raise_error: If False, failures are returned in ``MergeResult.error``

        Returns:
            MergeResult

        Raises:
            MergeError subclass describing the failed phase (when raise_error is True)
        """
        self._reset()
        start = time.monotonic()
        result = MergeResult()
        try:
            self._run(type_id, records, cancel, result)
        except MergeError as e:
            result.error = e
            if raise_error:
                raise
        finally:
            result.state = self._outcome_state()
            result.cleaned_up = self.state == MergeState.CLEANED_UP
            result.history = list(self.history)
            result.elapsed = time.monotonic() - start
        return result

    def _outcome_state(self) -> str:
        """COMMITTED or FAILED once cleaned up, otherwise the state the merge stopped in."""
        if self.state == MergeState.CLEANED_UP:
            return self.history[-2]
        return self.state

    def _run(self, type_id: Any, records: Iterable[Any],
             cancel: Optional[CancellationToken], result: MergeResult) -> None:
        # pre-transactional: nothing to roll back or clean up
        self._check(cancel, 'resolve', result)
        descriptor = self.resolver.resolve(type_id)
        result.table = descriptor.full_name
        self._transition(MergeState.SCHEMA_RESOLVED)

        self._check(cancel, 'project', result)
        buffer = self.projector.project(records, descriptor)
        staging = staging_name(descriptor, prefix=self.staging_prefix, schema=self.staging_schema)
        plan = MergePlan.from_buffer(descriptor, buffer, staging, update_key_columns=self.update_key_columns)
        result.staging_name = staging
        self._transition(MergeState.PROJECTED)

        cursor = self.database.cursor()
        stager = StagingTableManager(cursor)
        loader = BulkLoader(cursor, batch_size=self.batch_size)
        unregister = cancel.register(cursor.cancel) if cancel is not None else None
        primary = None
        try:
            with self.database.transaction():
                self._transition(MergeState.TRANSACTION_OPEN)

                self._check(cancel, 'create_staging', result)
                stager.create_staging(descriptor, plan.staging)
                self._transition(MergeState.STAGING_CREATED)

                self._check(cancel, 'load', result)
                result.rows_staged = loader.load(plan.staging, buffer, plan.staged_columns,
                                                 cancel=cancel, table=plan.target)
                self._transition(MergeState.LOADED)

                self._check(cancel, 'merge', result)
                result.rows_affected = self._execute_merge(cursor, plan)
                self._transition(MergeState.MERGED)

                self._check(cancel, 'commit', result)
            self._transition(MergeState.COMMITTED)
            logger.info(f"MERGE via staging table → {result.rows_staged:,} records into {plan.target} "
                        f"({result.rows_affected:,} rows affected)")
        except Exception as e:
            primary = self._primary_error(e, cancel, result)
            stopped_in = self.state
            if stopped_in in MergeState.TRANSACTIONAL:
                self._transition(MergeState.FAILED)
            logger.error(f"Merge into {plan.target} failed after {stopped_in}: {primary}")
            if primary is e:
                raise
            raise primary from e
        finally:
            if unregister is not None:
                unregister()
            self._cleanup(stager, plan, result, primary)

    def _primary_error(self, error: Exception, cancel: Optional[CancellationToken],
                       result: MergeResult) -> Exception:
        """Map whatever escaped the transaction onto the error the caller should see."""
        if isinstance(error, MergeCancelled):
            return error
        if cancel is not None and cancel.cancelled:
            # an interrupted statement surfaces as a driver error
            phase = getattr(error, 'phase', self.state)
            return MergeCancelled("operation cancelled", table=result.table,
                                  staging=result.staging_name, phase=phase)
        if isinstance(error, MergeError):
            return error
        if self.state == MergeState.MERGED and isinstance(error, self.database.interface.DatabaseError):
            # only COMMIT runs between MERGED and COMMITTED
            return MergeExecutionFailure(str(error), table=result.table,
                                         staging=result.staging_name, phase='commit')
        return error

    def _execute_merge(self, cursor, plan: MergePlan) -> int:
        sql = self.script_builder.build(plan)
        try:
            cursor.execute(sql)
        except self.database.interface.DatabaseError as e:
            logger.error(f"MERGE into {plan.target} failed: {e}")
            raise MergeExecutionFailure(str(e), table=plan.target, staging=plan.staging) from e
        return getattr(cursor, 'rowcount', -1)

    def _cleanup(self, stager: StagingTableManager, plan: MergePlan, result: MergeResult,
                 primary: Optional[Exception]) -> None:
        """Drop the staging table after commit or rollback; never masks ``primary``."""
        try:
            with self.database.transaction():
                stager.drop_if_exists(plan.staging, table=plan.target)
        except Exception as e:
            failure = e if isinstance(e, CleanupFailure) else \
                CleanupFailure(str(e), table=plan.target, staging=plan.staging)
            logger.error(f"Failed to drop staging table {plan.staging}: {failure}")
            result.cleanup_error = failure
            if isinstance(primary, MergeError):
                primary.cleanup_error = failure
            return
        if self.state in (MergeState.COMMITTED, MergeState.FAILED):
            self._transition(MergeState.CLEANED_UP)


def bulk_merge(database, resolver, type_id: Any, records: Iterable[Any],
               cancel: Optional[CancellationToken] = None, raise_error: bool = True,
               **kwargs) -> MergeResult:
    """
    Merge ``records`` into the table mapped to ``type_id``.

    Each call is a fresh merge with its own coordinator, staging table and
    transaction. Keyword arguments are passed to :class:`MergeCoordinator`.

    Example:
        result = bulk_merge(db, registry, Order, orders, batch_size=5000)
    """
    coordinator = MergeCoordinator(database, resolver, **kwargs)
    return coordinator.merge(type_id, records, cancel=cancel, raise_error=raise_error)
