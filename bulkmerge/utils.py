# bulkmerge/utils.py
"""
Identifier, placeholder and batching helpers shared by the merge steps.
"""

import itertools
import re
from typing import Tuple, List, Any, Iterable, Optional

from .defaults import settings

_NAMED_PARAM = re.compile(r'(?<![:\w]):(\w+)')


class ParamStyle:
    """
    DB-API placeholder styles of the SQL Server drivers bulkmerge loads.

    Statements are written with ``:name`` placeholders and rewritten for the
    driver before execution. pyodbc binds ``?`` positionally; pymssql takes
    ``%(name)s`` with a dict, or ``%s`` with a tuple for executemany.

    ::
        >>> ParamStyle.get_placeholder('pyformat')
        '%s'
    """
    QMARK = 'qmark'
    PYFORMAT = 'pyformat'
    DEFAULT = QMARK

    _positional_markers = {QMARK: '?', PYFORMAT: '%s'}

    @classmethod
    def values(cls) -> Tuple[str, ...]:
        return tuple(cls._positional_markers)

    @classmethod
    def get_placeholder(cls, paramstyle: str) -> str:
        """Marker for one positional value, used to build executemany INSERTs."""
        try:
            return cls._positional_markers[paramstyle]
        except KeyError:
            raise ValueError(f"Unsupported paramstyle: {paramstyle}") from None


def process_sql_parameters(sql: str, paramstyle: str) -> Tuple[str, Tuple[str, ...]]:
    """
    Rewrite ``:name`` placeholders for the driver.

    Returns the converted statement and the parameter names in the order they
    appear. A name used twice appears twice, since qmark binds by position.
    """
    names = tuple(_NAMED_PARAM.findall(sql))
    if paramstyle == ParamStyle.QMARK:
        return _NAMED_PARAM.sub('?', sql), names
    if paramstyle == ParamStyle.PYFORMAT:
        return _NAMED_PARAM.sub(r'%(\1)s', sql), names
    raise ValueError(f"Unsupported paramstyle: {paramstyle}")


def bind_params(param_names: Tuple[str, ...], paramstyle: str, values: dict) -> Any:
    """Arrange ``values`` as the tuple or dict the paramstyle expects."""
    if paramstyle == ParamStyle.QMARK:
        return tuple(values.get(name) for name in param_names)
    return {name: values.get(name) for name in param_names}


# Fragments that would end a bracket-quoted name early or smuggle in SQL
_FORBIDDEN = ('[', ']', '"', ';', '--', '/*', '*/', '\x00', '\x1a', '\n', '\r')


def validate_identifier(identifier: str, max_length: Optional[int] = None) -> str:
    """
    Check that a single table, schema or column name can be bracket-quoted safely.

    The name is one part: a dot is an ordinary character here, as in the
    column ``[Unit.Price]``. Use :func:`validate_table_name` for ``schema.table``.
    Returns ``identifier`` unchanged.

    Raises:
        ValueError: naming the offending part
    """
    if max_length is None:
        max_length = settings.get('max_identifier_length', 128)
    if not identifier:
        raise ValueError("Invalid identifier: empty name")
    if not (identifier[0].isalpha() or identifier[0] in '_#'):
        raise ValueError(f"Invalid identifier {identifier!r}: must start with a letter, _ or #")
    if len(identifier) > max_length:
        raise ValueError(f"Invalid identifier {identifier!r}: longer than {max_length} characters")
    if identifier != identifier.strip(' '):
        raise ValueError(f"Invalid identifier {identifier!r}: leading or trailing spaces")
    bad = next((fragment for fragment in _FORBIDDEN if fragment in identifier), None)
    if bad is not None:
        raise ValueError(f"Invalid identifier {identifier!r}: contains {bad!r}")
    return identifier


def validate_table_name(name: str, max_length: Optional[int] = None) -> str:
    """Validate a ``[schema.]table`` name part by part; returns ``name`` unchanged."""
    for part in split_table_name(name):
        if part is not None:
            validate_identifier(part, max_length)
    return name


def quote_identifier(identifier: str) -> str:
    """Bracket-quote one name part: ``Unit.Price`` -> ``[Unit.Price]``"""
    return f"[{identifier}]"


def quote_table_name(name: str) -> str:
    """``dbo.Orders`` -> ``[dbo].[Orders]``"""
    return '.'.join(quote_identifier(part) for part in split_table_name(name) if part is not None)


def qualified_name(table: str, schema: Optional[str] = None) -> str:
    """Join schema and table the way they appear in SQL (``schema.table``)."""
    return f"{schema}.{table}" if schema else table


def split_table_name(name: str) -> Tuple[Optional[str], str]:
    """Split ``schema.table`` into ``(schema, table)``; schema is None when absent."""
    parts = name.split('.')
    if len(parts) == 1:
        return None, parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"Expected [schema.]table, got: {name}")


def wrap_at_comma(text: str, width: int = 70) -> str:
    """
    Break a long column list after the first comma past ``width`` characters.

    Commas inside parentheses, as in ``DECIMAL(10, 2)``, never break.
    """
    pieces = re.split(r'(\([^)]*\))', text)
    # odd positions hold the parenthesised groups
    pieces[::2] = [re.sub(r'(.{%d}[^,]*), ' % width, r'\1,\n    ', piece) for piece in pieces[::2]]
    return ''.join(pieces)


def batch_iterable(iterable: Iterable[Any], batch_size: int) -> Iterable[List[Any]]:
    """Yield lists of up to ``batch_size`` items; the last may be shorter."""
    iterator = iter(iterable)
    while True:
        chunk = list(itertools.islice(iterator, batch_size))
        if not chunk:
            return
        yield chunk
