# tests/conftest.py
"""
Shared test fixtures and configuration for pytest.

No SQL Server is needed: ``fake_driver`` is a recording DB-API module that
behaves like pyodbc as far as bulkmerge can tell (qmark paramstyle,
``fast_executemany``, ``DatabaseError``). Every statement, commit and
rollback lands in ``connection.events`` in the order it happened.
"""

import copy
import os
import types
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
from unittest.mock import patch

import pytest

from bulkmerge.database import Database
from bulkmerge.defaults import settings
from bulkmerge.schema import SchemaRegistry

TEST_KEY = '2YvTXI9DHQPy4d6-ZC9NxcypvLMsJ94OBdmoHyjmwbM='


class FakeDatabaseError(Exception):
    """Stands in for pyodbc.DatabaseError."""


class FakeCursor:
    """Records statements; raises when a statement contains a ``fail_on`` fragment."""

    def __init__(self, connection):
        self.connection = connection
        self.fast_executemany = False
        self.rowcount = -1
        self.rows = []
        self.cancelled = False

    def _maybe_fail(self, sql):
        for fragment, error in list(self.connection.fail_on.items()):
            if fragment in sql:
                raise error

    def execute(self, sql, params=None):
        self.connection.events.append(('execute', sql, params))
        self._maybe_fail(sql)
        if sql.lstrip().startswith('MERGE'):
            self.rowcount = self.connection.merge_rowcount
        self.rows = list(self.connection.result_rows)
        return self

    def executemany(self, sql, seq_of_params):
        self.connection.events.append(('executemany', sql, list(seq_of_params)))
        self._maybe_fail(sql)
        if self.connection.on_executemany is not None:
            self.connection.on_executemany()
        self.rowcount = len(seq_of_params)

    def fetchall(self):
        rows, self.rows = self.rows, []
        return rows

    def fetchone(self):
        return self.rows.pop(0) if self.rows else None

    def cancel(self):
        self.cancelled = True
        self.connection.events.append(('cancel',))

    def close(self):
        pass


class FakeConnection:

    def __init__(self):
        self.autocommit = False
        self.events = []
        self.fail_on = {}
        self.result_rows = []
        self.merge_rowcount = 0
        self.on_executemany = None
        self.commit_error = None
        self.rollback_error = None
        self.closed = False
        self.cursors: List[FakeCursor] = []

    def cursor(self):
        cur = FakeCursor(self)
        self.cursors.append(cur)
        return cur

    def commit(self):
        self.events.append(('commit',))
        if self.commit_error is not None:
            error, self.commit_error = self.commit_error, None
            raise error

    def rollback(self):
        self.events.append(('rollback',))
        if self.rollback_error is not None:
            error, self.rollback_error = self.rollback_error, None
            raise error

    def close(self):
        self.closed = True

    # helpers for assertions
    def statements(self, kind: Optional[str] = None) -> List[str]:
        return [event[1] for event in self.events
                if event[0] in ('execute', 'executemany') and (kind is None or event[0] == kind)]

    def kinds(self) -> List[str]:
        """Event names with statements reduced to their first keyword."""
        out = []
        for event in self.events:
            if event[0] in ('execute', 'executemany'):
                out.append(event[1].split()[0].upper())
            else:
                out.append(event[0])
        return out


@pytest.fixture(autouse=True)
def setup_test_config():
    """Use tests/test.yml and a known encryption key; restore global settings afterwards."""
    from bulkmerge import config

    saved = copy.deepcopy(settings)
    config.set_config_file(str(Path(__file__).parent / 'test.yml'))
    with patch.dict(os.environ, {'BULKMERGE_ENCRYPTION_KEY': TEST_KEY}):
        yield
    settings.clear()
    settings.update(saved)
    config._config_manager = None


@pytest.fixture
def fake_driver():
    """A pyodbc look-alike module."""
    return types.SimpleNamespace(
        __name__='pyodbc',
        paramstyle='qmark',
        DatabaseError=FakeDatabaseError,
        Error=FakeDatabaseError,
    )


@pytest.fixture
def fake_connection():
    return FakeConnection()


@pytest.fixture
def db(fake_connection, fake_driver):
    return Database(fake_connection, fake_driver, database_name='BaSingSe')


@pytest.fixture
def cursor(db):
    return db.cursor()


@dataclass
class Order:
    id: int
    customer: str
    total: float
    lines: List[str] = field(default_factory=list)


@dataclass
class Soldier:
    soldier_id: str
    name: str
    rank: Optional[str] = None
    home_village: Optional[str] = None
    medals: List[str] = field(default_factory=list)


@pytest.fixture
def registry():
    """Orders keyed on an identity column and Fire Nation soldiers keyed on a natural key."""
    reg = SchemaRegistry()
    reg.register_dataclass(Order, table='Orders', schema='dbo',
                           primary_key=['id'], generated=['id'],
                           column_names={'id': 'Id', 'customer': 'Customer', 'total': 'Total'})
    reg.register_columns(Soldier, 'fire_nation_army', {
        'soldier_id': {'field': 'soldier_id', 'primary_key': True},
        'name': {'field': 'name', 'nullable': False},
        'rank': {},
        'home_village': {},
        'medals': {'type': list},
    })
    return reg


@pytest.fixture
def soldiers():
    return [
        Soldier('FN001', 'Zuko', 'Prince', 'Fire Nation Capital'),
        Soldier('FN002', 'Zhao', 'Admiral', 'Fire Nation Capital'),
        Soldier('FN003', 'Iroh', 'General', 'Fire Nation Capital', medals=['Siege of Ba Sing Se']),
    ]


@pytest.fixture
def orders():
    return [Order(0, 'Aang', 10.0), Order(0, 'Katara', 25.5)]


@pytest.fixture
def order_cls():
    return Order


@pytest.fixture
def soldier_cls():
    return Soldier
