# bulkmerge/etl/merge_script.py
"""
Set-based MERGE generation for a loaded staging table.
"""

import logging
from dataclasses import dataclass
from textwrap import dedent
from typing import Optional, Tuple

from ..defaults import settings
from ..exceptions import NoWritableColumns
from ..schema import EntityDescriptor
from ..utils import quote_identifier, quote_table_name, wrap_at_comma
from .projection import TabularBuffer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergePlan:
    """
    Everything needed to write one MERGE statement.

    ``insertable_columns`` are the projected columns the server does not
    generate. ``staged_columns`` are the columns the bulk loader writes into
    the staging table: the key columns plus the insertable ones, in table order.
    """

    target: str
    staging: str
    key_columns: Tuple[str, ...]
    insertable_columns: Tuple[str, ...]
    update_columns: Tuple[str, ...]
    staged_columns: Tuple[str, ...]

    @classmethod
    def from_buffer(cls, descriptor: EntityDescriptor, buffer: TabularBuffer, staging: str,
                    update_key_columns: Optional[bool] = None) -> 'MergePlan':
        """
        Derive the plan from the projected columns.

        The match key is the projected primary key. A descriptor without a
        projected primary key matches on every projected column.

        Raises:
            NoWritableColumns: when every projected column is server generated
        """
        if update_key_columns is None:
            update_key_columns = settings.get('update_key_columns', True)

        projected = buffer.columns
        insertable = tuple(col.name for col in projected if not col.is_generated)
        if not insertable:
            raise NoWritableColumns("every projected column is server generated", table=descriptor.full_name)

        keys = tuple(col.name for col in projected if col.is_primary_key)
        if not keys:
            logger.warning(f"{descriptor.full_name} has no projected primary key, matching on all columns")
            keys = tuple(col.name for col in projected)

        if update_key_columns:
            updates = insertable
        else:
            updates = tuple(col for col in insertable if col not in keys)

        staged = tuple(col.name for col in projected if col.name in keys or col.name in insertable)
        return cls(
            target=descriptor.full_name,
            staging=staging,
            key_columns=keys,
            insertable_columns=insertable,
            update_columns=updates,
            staged_columns=staged,
        )


class MergeScriptBuilder:
    """
    Builds the SQL Server MERGE that moves a staging table into its target.

    The staging rows are read through ``SELECT DISTINCT`` so identical input
    records collapse into one source row. The matched branch writes the same
    column list as the insert branch unless the plan drops the key columns
    from it; a plan without update columns produces an insert-only MERGE.

    Example output::

        MERGE INTO [dbo].[Orders] AS Target
        USING (SELECT DISTINCT * FROM [dbo].[t_dbo_Orders_...]) AS Source
        ON (Target.[Id] = Source.[Id])
        WHEN NOT MATCHED BY TARGET THEN
            INSERT ([Customer], [Total])
            VALUES (Source.[Customer], Source.[Total])
        WHEN MATCHED THEN
            UPDATE SET Target.[Customer] = Source.[Customer], Target.[Total] = Source.[Total];
    """

    def build(self, plan: MergePlan) -> str:
        if not plan.insertable_columns:
            raise NoWritableColumns("merge plan has no insertable columns",
                                    table=plan.target, staging=plan.staging)

        key_conditions = ' AND '.join(
            f"Target.{quote_identifier(col)} = Source.{quote_identifier(col)}" for col in plan.key_columns
        )
        insert_cols = ', '.join(quote_identifier(col) for col in plan.insertable_columns)
        insert_values = ', '.join(f"Source.{quote_identifier(col)}" for col in plan.insertable_columns)
        if len(plan.insertable_columns) > 4:
            insert_cols = wrap_at_comma(insert_cols)
            insert_values = wrap_at_comma(insert_values)

        # wrapped column lists carry their own indentation, so dedent the template first
        template = dedent("""\
        MERGE INTO {target} AS Target
        USING (SELECT DISTINCT * FROM {staging}) AS Source
        ON ({on})
        WHEN NOT MATCHED BY TARGET THEN
            INSERT ({insert_cols})
            VALUES ({insert_values})""")
        sql = template.format(target=quote_table_name(plan.target), staging=quote_table_name(plan.staging),
                              on=key_conditions, insert_cols=insert_cols, insert_values=insert_values)

        if plan.update_columns:
            update_set = ', '.join(
                f"Target.{quote_identifier(col)} = Source.{quote_identifier(col)}" for col in plan.update_columns
            )
            if len(plan.update_columns) > 4:
                update_set = wrap_at_comma(update_set)
            sql += f"\nWHEN MATCHED THEN\n    UPDATE SET {update_set}"

        # MERGE must be terminated
        sql += ';'
        logger.debug(f"Generated merge SQL for {plan.target}:\n{sql}")
        return sql
