# bulkmerge/cursors.py
"""
Cursor wrapper that delegates to the driver cursor stored in _cursor.
"""

import logging
from typing import List, Any, Optional, Iterator

from .defaults import settings
from .utils import ParamStyle, process_sql_parameters, bind_params

logger = logging.getLogger(__name__)
__all__ = ['Cursor']


class Cursor:
    """
    Thin wrapper over a DB-API cursor.

    Adds statement logging, ``:name`` parameter conversion via
    :meth:`execute_named`, a configurable ``batch_size`` for bulk transfers,
    and pyodbc's ``fast_executemany`` switch. Everything else is delegated to
    the driver cursor, so native functionality stays available.

    Attributes
    ----------
    connection : Database
        The database connection this cursor belongs to
    paramstyle : str
        Parameter style of the underlying driver ('qmark', 'pyformat', ...)
    batch_size : int
        Rows per executemany() call during bulk loads

    Example
    -------
    ::

        cursor = db.cursor()
        cursor.execute_named("SELECT * FROM dbo.Orders WHERE Id = :id", {'id': 42})
        row = cursor.fetchone()
    """
    _local_attrs = [
        'connection', 'debug', 'paramstyle', 'placeholder', 'batch_size', '_cursor', '_statement'
    ]
    WRAPPER_SETTINGS = ('batch_size', 'debug')

    def __init__(self,
                 connection,
                 batch_size: Optional[int] = None,
                 debug: Optional[bool] = False,
                 **kwargs):
        """
        Args:
            connection: Database connection object
            batch_size: Rows per executemany() call; defaults to settings['default_batch_size']
            debug: Log every statement at INFO instead of DEBUG
            **kwargs: Passed to the underlying driver cursor
        """
        self.connection = connection
        self.debug = debug
        self.batch_size = batch_size if batch_size is not None else settings.get('default_batch_size', 1000)
        self._statement = None

        driver_kwargs = {key: val for key, val in kwargs.items() if key not in self.WRAPPER_SETTINGS}
        # Database wrappers hand out the driver connection's cursor
        raw = getattr(connection, '_connection', connection)
        try:
            self._cursor = raw.cursor(**driver_kwargs)
        except Exception as e:
            raise TypeError(f'Cursor needs a DB-API connection or Database, got {type(connection).__name__}: {e}')

        self.paramstyle = getattr(connection.interface, 'paramstyle', ParamStyle.DEFAULT)
        self.placeholder = ParamStyle.get_placeholder(self.paramstyle)

    def __getattr__(self, key: str) -> Any:
        """Delegate attribute access to underlying cursor."""
        if key == 'statement' and not hasattr(self._cursor, 'statement'):
            return self._statement
        return getattr(self._cursor, key)

    def __setattr__(self, key: str, value: Any) -> None:
        if key in self._local_attrs:
            self.__dict__[key] = value
        else:
            setattr(self._cursor, key, value)

    def __dir__(self) -> List[str]:
        return list(set(dir(self._cursor) + dir(self.__class__) + self._local_attrs))

    def __iter__(self) -> Iterator:
        return self

    def __next__(self) -> Any:
        row = self.fetchone()
        if row is None:
            raise StopIteration
        return row

    def _log(self, sql: str, params: Any = None) -> None:
        level = logging.INFO if self.debug else logging.DEBUG
        if params:
            logger.log(level, f"{sql}\nParams: {params}")
        else:
            logger.log(level, sql)

    def execute(self, sql: str, params: Any = None) -> Any:
        """Execute a statement already written in the driver's paramstyle."""
        self._statement = sql
        self._log(sql, params)
        if params is None:
            return self._cursor.execute(sql)
        return self._cursor.execute(sql, params)

    def execute_named(self, sql: str, bind_vars: Optional[dict] = None) -> Any:
        """Execute a statement written with ``:name`` placeholders."""
        converted, param_names = process_sql_parameters(sql, self.paramstyle)
        params = bind_params(param_names, self.paramstyle, bind_vars or {})
        return self.execute(converted, params if param_names else None)

    def executemany(self, sql: str, seq_of_params: list) -> Any:
        self._statement = sql
        self._log(sql, f"<{len(seq_of_params):,} rows>")
        return self._cursor.executemany(sql, seq_of_params)

    def enable_fast_executemany(self) -> bool:
        """Turn on pyodbc's array binding when the driver cursor supports it."""
        if not settings.get('fast_executemany', True):
            return False
        if hasattr(self._cursor, 'fast_executemany'):
            self._cursor.fast_executemany = True
            return True
        return False

    def cancel(self) -> None:
        """Interrupt the running statement if the driver supports it."""
        cancel = getattr(self._cursor, 'cancel', None)
        if cancel is not None:
            cancel()

    def close(self) -> None:
        self._cursor.close()
