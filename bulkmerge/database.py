# bulkmerge/database.py
"""
Database connection wrapper that provides a uniform interface
to the SQL Server DB-API drivers.
"""

import importlib
import importlib.util
import logging
from typing import Any, Optional, List, Tuple
from contextlib import contextmanager

from .cursors import Cursor
from .utils import ParamStyle

logger = logging.getLogger(__name__)

DRIVERS = {
    'pyodbc': {
        'database_type': 'sqlserver',
        'priority': 11,
        'param_map': {'host': 'SERVER', 'database': 'DATABASE', 'user': 'UID', 'password': 'PWD'},
        'required_params': [{'host', 'database', 'user'}, {'host', 'database', 'trusted_connection'}],
        'optional_params': {'password', 'port', 'odbc_driver', 'trusted_connection', 'encrypt',
                            'trustservercertificate', 'app'},
        'connection_method': 'odbc_string',
        'odbc_driver_name': 'ODBC Driver 18 for SQL Server',
        'default_port': 1433,
    },
    'pymssql': {
        'database_type': 'sqlserver',
        'priority': 12,
        'param_map': {'host': 'server'},
        'required_params': [{'host', 'database', 'user'}],
        'optional_params': {'password', 'port', 'timeout', 'login_timeout', 'charset', 'appname',
                            'tds_version'},
        'connection_method': 'kwargs',
        'default_port': 1433,
    },
}


def get_all_drivers() -> dict:
    return dict(DRIVERS)


def get_available_drivers(valid_only: bool = True) -> List[str]:
    """
    Driver names, preferred first.

    Args:
        valid_only: Leave out drivers that are not installed.
    """
    ranked = sorted(DRIVERS, key=lambda name: DRIVERS[name]['priority'])
    if not valid_only:
        return ranked
    return [name for name in ranked if importlib.util.find_spec(name) is not None]


def _driver_info(driver_name: str) -> dict:
    try:
        return DRIVERS[driver_name]
    except KeyError:
        raise ValueError(f"Unknown driver: {driver_name}. Supported: {', '.join(DRIVERS)}") from None


def validate_connection_params(driver_name: str, **params) -> dict:
    """
    Check ``params`` against what the driver needs and rename them for its ``connect()``.

    Parameters the driver does not take are dropped.

    Raises:
        ValueError: If the driver is unknown or required parameters are missing
    """
    info = _driver_info(driver_name)
    params.setdefault('port', info['default_port'])

    required_sets = info['required_params']
    if not any(required.issubset(params) for required in required_sets):
        raise ValueError(f"Missing required parameters for {driver_name}. Need one of: {required_sets}")

    accepted = set(info['optional_params']).union(*required_sets)
    rename = info['param_map']
    return {rename.get(key, key): value for key, value in params.items() if key in accepted}


def _import_driver(driver: Optional[str]) -> Tuple[str, Any]:
    """Import the requested driver, else the first installed one."""
    if driver:
        _driver_info(driver)
        try:
            return driver, importlib.import_module(driver)
        except ImportError:
            logger.warning(f"Driver '{driver}' is not installed, trying the others")

    for candidate in get_available_drivers():
        try:
            return candidate, importlib.import_module(candidate)
        except ImportError:
            continue
    raise ImportError("No SQL Server driver found. Install pyodbc or pymssql.")


def get_odbc_connection_string(odbc_driver_name: Optional[str] = None, **params) -> str:
    """Build an ODBC connection string; SERVER gets the port appended SQL Server style."""
    server = params.pop('SERVER', 'localhost')
    port = params.pop('port', None)
    odbc_driver = params.pop('odbc_driver', None) or odbc_driver_name
    parts = []
    if odbc_driver:
        parts.append(f"DRIVER={{{odbc_driver}}}")
    parts.append(f"SERVER={server},{port}" if port else f"SERVER={server}")
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = 'yes' if value else 'no'
        parts.append(f"{key.upper()}={value}")
    return ';'.join(parts)


class Database:
    """
    Database connection wrapper that provides uniform interface
    across SQL Server adapters.

    Attribute access not handled here is delegated to the driver connection,
    so ``db.commit()``, ``db.rollback()`` and driver specific attributes work
    as usual.
    """

    _local_attrs = [
        '_connection', 'server_type', 'database_name', 'interface', 'name', 'placeholder',
        'cursor_settings'
    ]

    def __init__(self, connection, interface, database_name: Optional[str] = None,
                 cursor_settings: Optional[dict] = None):
        """
        Initialize Database wrapper.

        Args:
            connection: Underlying database connection object
            interface: Database adapter module (pyodbc, pymssql)
            database_name: Name of the database
            cursor_settings: Default keyword arguments for cursor()
        """
        self._connection = connection
        self.interface = interface
        self.database_name = database_name
        self.name = None
        self.cursor_settings = dict(cursor_settings or {})

        paramstyle = getattr(interface, 'paramstyle', ParamStyle.DEFAULT)
        self.placeholder = ParamStyle.get_placeholder(paramstyle)

        driver = get_all_drivers().get(getattr(interface, '__name__', ''))
        self.server_type = driver['database_type'] if driver else 'unknown'

    def __getattr__(self, key: str) -> Any:
        """Delegate attribute access to underlying connection."""
        if key == '__name__':
            return self.name or self.database_name or 'unknown'
        return getattr(self._connection, key)

    def __setattr__(self, key: str, value: Any) -> None:
        if key in self._local_attrs:
            self.__dict__[key] = value
        else:
            setattr(self._connection, key, value)

    def __str__(self) -> str:
        if self.database_name:
            return f'Database({self.database_name}:{self.server_type})'
        return f'Database({self.server_type})'

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def database_type(self) -> str:
        return self.server_type

    def cursor(self, **kwargs) -> Cursor:
        """
        Create a cursor.

        Args:
            **kwargs: batch_size, debug, or arguments for the driver cursor

        Example:
            cursor = db.cursor(batch_size=5000)
        """
        return Cursor(self, **{**self.cursor_settings, **kwargs})

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions.

        Autocommit is switched off for the duration if the driver exposes it,
        and restored afterwards.

        Example:
            with db.transaction():
                cursor = db.cursor()
                cursor.execute("INSERT ...")
                cursor.execute("UPDATE ...")
                # Auto-commit on success, rollback on exception

        A rollback that fails is logged and the original exception propagates.
        """
        previous = getattr(self._connection, 'autocommit', None)
        if previous is True:
            self._connection.autocommit = False
        try:
            yield self
            self.commit()
        except BaseException:
            try:
                self.rollback()
            except Exception as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")
            raise
        finally:
            if previous is True:
                self._connection.autocommit = True

    @classmethod
    def create(cls, driver: Optional[str] = None, cursor_settings: Optional[dict] = None,
               **kwargs) -> 'Database':
        """
        Open a SQL Server connection through pyodbc or pymssql.

        Args:
            driver: 'pyodbc' or 'pymssql'; the first installed driver by priority if omitted
            cursor_settings: Default keyword arguments for cursor()
            **kwargs: Connection parameters (host, database, user, password, port, ...)
        """
        driver_name, module = _import_driver(driver)
        info = DRIVERS[driver_name]
        params = validate_connection_params(driver_name, **kwargs)
        if info['connection_method'] == 'odbc_string':
            connection = module.connect(get_odbc_connection_string(info.get('odbc_driver_name'), **params))
        else:
            connection = module.connect(**params)

        logger.debug(f"Connected to {kwargs.get('database')} with {driver_name}")
        return cls(connection, module, kwargs.get('database'), cursor_settings=cursor_settings)


def sqlserver(user: Optional[str] = None, password: Optional[str] = None, database: Optional[str] = None,
              host: str = 'localhost', port: int = 1433, driver: Optional[str] = None,
              **kwargs) -> Database:
    """Create SQL Server connection."""
    params = {'host': host, 'port': port, 'database': database, **kwargs}
    if user is not None:
        params['user'] = user
    if password is not None:
        params['password'] = password
    return Database.create(driver=driver, **params)
