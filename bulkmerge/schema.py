# bulkmerge/schema.py
"""
Table mappings for record types.

A :class:`SchemaRegistry` maps a record type to an :class:`EntityDescriptor`
once, up front; the merge engine only ever reads the resolved descriptor.
Descriptors can be registered from a column-config dict (the same shape as
the ``mappings`` section of bulkmerge.yml), derived from a dataclass, or read
from the database.

Example
-------
::

    from dataclasses import dataclass, field
    from bulkmerge.schema import SchemaRegistry

    @dataclass
    class Order:
        id: int
        customer: str
        total: float
        lines: list = field(default_factory=list)   # collection, never a column

    registry = SchemaRegistry()
    registry.register_dataclass(Order, table='Orders', schema='dbo',
                                primary_key=['id'], generated=['id'],
                                column_names={'id': 'Id', 'customer': 'Customer', 'total': 'Total'})

    registry.register_columns('Soldier', 'fire_nation_army', {
        'soldier_id': {'field': 'recruit_number', 'primary_key': True},
        'name': {'field': 'full_name', 'nullable': False},
        'rank': {},
    })
"""

import dataclasses
import logging
import typing
from collections.abc import Iterable as IterableABC
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from .exceptions import ProjectionFailure, UnknownEntityType
from .utils import validate_identifier, validate_table_name, qualified_name, split_table_name

logger = logging.getLogger(__name__)

TypeId = Union[type, str]

_CHARACTER_TYPES = (str, bytes, bytearray, memoryview)


def is_collection_type(tp: Any) -> bool:
    """
    True when ``tp`` is an iterable of non-character elements.

    Strings and byte strings are iterable but are scalar column values.
    ``Optional[X]`` is unwrapped; typing generics (``List[int]``,
    ``dict[str, int]``) are resolved to their origin.
    """
    if tp is None or tp is Any:
        return False
    origin = typing.get_origin(tp)
    if origin is Union:
        args = [arg for arg in typing.get_args(tp) if arg is not type(None)]
        return len(args) == 1 and is_collection_type(args[0])
    if origin is not None:
        tp = origin
    if not isinstance(tp, type):
        return False
    if issubclass(tp, _CHARACTER_TYPES):
        return False
    return issubclass(tp, IterableABC)


@dataclass(frozen=True)
class ColumnDescriptor:
    """A mapped column and the record property that feeds it."""

    name: str
    property_name: Optional[str] = None
    is_primary_key: bool = False
    is_generated: bool = False
    nullable: bool = True
    python_type: Any = None
    mapped: bool = True

    def __post_init__(self):
        validate_identifier(self.name)

    @property
    def is_collection(self) -> bool:
        return is_collection_type(self.python_type)

    @property
    def projectable(self) -> bool:
        """Has a property mapping and holds a scalar value."""
        return self.mapped and bool(self.property_name) and not self.is_collection


@dataclass(frozen=True)
class EntityDescriptor:
    """
    Resolved table metadata for one record type.

    Raises:
        ProjectionFailure: when the table name is empty or there are no columns
    """

    table: str
    columns: Tuple[ColumnDescriptor, ...]
    schema: Optional[str] = None

    def __post_init__(self):
        if not self.table:
            raise ProjectionFailure("table name is empty", phase='resolve')
        object.__setattr__(self, 'columns', tuple(self.columns))
        if not self.columns:
            raise ProjectionFailure("descriptor has no columns", table=self.full_name, phase='resolve')
        validate_table_name(self.full_name)
        names = [col.name.lower() for col in self.columns]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ProjectionFailure(f"duplicate columns: {', '.join(duplicates)}",
                                    table=self.full_name, phase='resolve')

    @property
    def full_name(self) -> str:
        return qualified_name(self.table, self.schema)

    @property
    def primary_key(self) -> Tuple[ColumnDescriptor, ...]:
        return tuple(col for col in self.columns if col.is_primary_key)

    @property
    def generated(self) -> Tuple[ColumnDescriptor, ...]:
        return tuple(col for col in self.columns if col.is_generated)

    def column(self, name: str) -> ColumnDescriptor:
        for col in self.columns:
            if col.name == name:
                return col
        raise KeyError(f"Column '{name}' not found in {self.full_name}")

    @classmethod
    def from_columns(cls, table: str, columns: Dict[str, Dict[str, Any]],
                     schema: Optional[str] = None) -> 'EntityDescriptor':
        """
        Build a descriptor from a column-config dict.

        Each column is configured with a dict containing:

        * **field** (str): source property name, defaults to the column name
        * **primary_key** / **key** (bool): part of the match key
        * **identity** / **generated** (bool): assigned by the server, never written
        * **nullable** (bool, default True)
        * **type** (type): declared property type, used to skip collections
        * **not_mapped** (bool): the property has no column

        ``table`` may be given as ``schema.table`` when ``schema`` is omitted.
        """
        if schema is None and '.' in table:
            schema, table = split_table_name(table)
        cols = []
        for name, col_def in columns.items():
            col_def = col_def or {}
            cols.append(ColumnDescriptor(
                name=name,
                property_name=col_def.get('field', name),
                is_primary_key=bool(col_def.get('primary_key') or col_def.get('key')),
                is_generated=bool(col_def.get('identity') or col_def.get('generated')),
                nullable=bool(col_def.get('nullable', True)),
                python_type=col_def.get('type'),
                mapped=not col_def.get('not_mapped', False),
            ))
        return cls(table=table, columns=tuple(cols), schema=schema)


class SchemaRegistry:
    """
    Cache of type → :class:`EntityDescriptor` mappings.

    Type ids are classes or strings; a class is also found by its ``__name__``
    so ``registry.resolve('Order')`` and ``registry.resolve(Order)`` agree.
    """

    def __init__(self):
        self._descriptors: Dict[TypeId, EntityDescriptor] = {}

    def __contains__(self, type_id: TypeId) -> bool:
        return self._lookup(type_id) is not None

    def __len__(self) -> int:
        return len(self._descriptors)

    def types(self) -> list:
        return list(self._descriptors.keys())

    def register(self, type_id: TypeId, descriptor: EntityDescriptor) -> EntityDescriptor:
        if type_id in self._descriptors:
            logger.info(f"Replacing mapping for {_type_name(type_id)} -> {descriptor.full_name}")
        self._descriptors[type_id] = descriptor
        logger.debug(f"Registered {_type_name(type_id)} -> {descriptor.full_name} "
                     f"({len(descriptor.columns)} columns)")
        return descriptor

    def register_columns(self, type_id: TypeId, table: str, columns: Dict[str, Dict[str, Any]],
                         schema: Optional[str] = None) -> EntityDescriptor:
        """Register a column-config dict; see :meth:`EntityDescriptor.from_columns`."""
        return self.register(type_id, EntityDescriptor.from_columns(table, columns, schema=schema))

    def register_dataclass(self, cls: type, table: Optional[str] = None, schema: Optional[str] = None,
                           primary_key: Iterable[str] = (), generated: Iterable[str] = (),
                           column_names: Optional[Dict[str, str]] = None) -> EntityDescriptor:
        """
        Derive a descriptor from a dataclass.

        Args:
            cls: Dataclass type
            table: Table name, defaults to the class name
            schema: Optional schema
            primary_key: Field names forming the primary key
            generated: Field names assigned by the server (identity)
            column_names: Field name → column name overrides

        A field with ``metadata={'not_mapped': True}`` is carried as an unmapped
        property and never projected.
        """
        if not dataclasses.is_dataclass(cls):
            raise TypeError(f"{cls!r} is not a dataclass")
        column_names = column_names or {}
        primary_key = set(primary_key)
        generated = set(generated)
        try:
            hints = typing.get_type_hints(cls)
        except (NameError, TypeError):
            hints = {}

        known = {f.name for f in dataclasses.fields(cls)}
        unknown = (primary_key | generated | set(column_names)) - known
        if unknown:
            raise ValueError(f"{cls.__name__} has no fields: {', '.join(sorted(unknown))}")

        cols = []
        for f in dataclasses.fields(cls):
            cols.append(ColumnDescriptor(
                name=column_names.get(f.name, f.name),
                property_name=f.name,
                is_primary_key=f.name in primary_key,
                is_generated=f.name in generated,
                nullable=f.name not in primary_key,
                python_type=hints.get(f.name, f.type if isinstance(f.type, type) else None),
                mapped=not f.metadata.get('not_mapped', False),
            ))
        descriptor = EntityDescriptor(table=table or cls.__name__, columns=tuple(cols), schema=schema)
        return self.register(cls, descriptor)

    def register_from_db(self, type_id: TypeId, cursor, table_name: str,
                         fields: Optional[Dict[str, str]] = None) -> EntityDescriptor:
        """
        Read the table definition from SQL Server and register it.

        Args:
            type_id: Type to register
            cursor: bulkmerge Cursor
            table_name: ``schema.table`` or ``table``
            fields: Column name → record property overrides (default: same name)
        """
        descriptor = descriptor_from_db(cursor, table_name, fields=fields)
        return self.register(type_id, descriptor)

    def resolve(self, type_id: TypeId) -> EntityDescriptor:
        descriptor = self._lookup(type_id)
        if descriptor is None:
            raise UnknownEntityType(f"no table mapping registered for {_type_name(type_id)}")
        return descriptor

    def _lookup(self, type_id: TypeId) -> Optional[EntityDescriptor]:
        descriptor = self._descriptors.get(type_id)
        if descriptor is None and isinstance(type_id, type):
            descriptor = self._descriptors.get(type_id.__name__)
        return descriptor


def _type_name(type_id: TypeId) -> str:
    return type_id if isinstance(type_id, str) else getattr(type_id, '__name__', repr(type_id))


_SQLSERVER_COLUMNS_SQL = '''
    SELECT
        c.COLUMN_NAME,
        c.IS_NULLABLE,
        CASE WHEN pk.COLUMN_NAME IS NOT NULL THEN 'Y' ELSE 'N' END AS key_column,
        COLUMNPROPERTY(OBJECT_ID(QUOTENAME(c.TABLE_SCHEMA) + '.' + QUOTENAME(c.TABLE_NAME)),
                       c.COLUMN_NAME, 'IsIdentity') AS is_identity,
        COLUMNPROPERTY(OBJECT_ID(QUOTENAME(c.TABLE_SCHEMA) + '.' + QUOTENAME(c.TABLE_NAME)),
                       c.COLUMN_NAME, 'IsComputed') AS is_computed,
        c.TABLE_SCHEMA
    FROM INFORMATION_SCHEMA.COLUMNS c
    LEFT JOIN (
        SELECT kcu.COLUMN_NAME, kcu.TABLE_NAME, kcu.TABLE_SCHEMA
        FROM INFORMATION_SCHEMA.TABLE_CONSTRAINTS tc
        JOIN INFORMATION_SCHEMA.KEY_COLUMN_USAGE kcu
            ON tc.CONSTRAINT_NAME = kcu.CONSTRAINT_NAME
            AND tc.TABLE_SCHEMA = kcu.TABLE_SCHEMA
        WHERE tc.CONSTRAINT_TYPE = 'PRIMARY KEY'
    ) pk ON c.COLUMN_NAME = pk.COLUMN_NAME
        AND c.TABLE_NAME = pk.TABLE_NAME
        AND c.TABLE_SCHEMA = pk.TABLE_SCHEMA
    WHERE c.TABLE_NAME = :table_name
      AND c.TABLE_SCHEMA = COALESCE(:schema_name, SCHEMA_NAME())
    ORDER BY c.ORDINAL_POSITION
'''


def descriptor_from_db(cursor, table_name: str, fields: Optional[Dict[str, str]] = None) -> EntityDescriptor:
    """
    Build an EntityDescriptor from SQL Server metadata.

    Identity and computed columns are marked generated; primary key columns
    come from the table's PRIMARY KEY constraint.
    """
    schema, table = split_table_name(table_name)
    fields = fields or {}
    cursor.execute_named(_SQLSERVER_COLUMNS_SQL, {'table_name': table, 'schema_name': schema})

    cols = []
    resolved_schema = schema
    for row in cursor.fetchall():
        col_name, is_nullable, is_key, is_identity, is_computed, table_schema = row[:6]
        resolved_schema = resolved_schema or table_schema
        cols.append(ColumnDescriptor(
            name=col_name,
            property_name=fields.get(col_name, col_name),
            is_primary_key=is_key == 'Y',
            is_generated=bool(is_identity) or bool(is_computed),
            nullable=is_nullable == 'YES',
        ))

    if not cols:
        raise UnknownEntityType(f"table {table_name} not found or has no columns", table=table_name)
    logger.debug(f"Read {len(cols)} columns for {table_name} from the database")
    return EntityDescriptor(table=table, columns=tuple(cols), schema=resolved_schema)
