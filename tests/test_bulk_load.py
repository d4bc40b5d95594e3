# tests/test_bulk_load.py
import pytest

from bulkmerge.cancellation import CancellationToken
from bulkmerge.defaults import settings
from bulkmerge.etl.bulk_load import BulkLoader, insert_statement
from bulkmerge.etl.projection import TabularProjector
from bulkmerge.exceptions import BulkLoadFailure, MergeCancelled
from bulkmerge.schema import EntityDescriptor
from conftest import FakeDatabaseError


@pytest.fixture
def buffer():
    descriptor = EntityDescriptor.from_columns('white_lotus', {
        'member_id': {'primary_key': True},
        'name': {},
        'tile': {},
    })
    members = [
        {'member_id': 1, 'name': 'Iroh', 'tile': 'white lotus'},
        {'member_id': 2, 'name': 'Pakku', 'tile': 'white lotus'},
        {'member_id': 3, 'name': 'Bumi', 'tile': 'white lotus'},
        {'member_id': 4, 'name': 'Jeong Jeong', 'tile': 'white lotus'},
        {'member_id': 5, 'name': 'Piandao', 'tile': 'white lotus'},
    ]
    return TabularProjector().project(members, descriptor)


class TestInsertStatement:
    """Test the staging INSERT."""

    def test_names_every_column(self):
        """Test columns are mapped by name, never positionally."""
        sql = insert_statement('t_lotus_1', ['member_id', 'name'])
        assert sql == "INSERT INTO [t_lotus_1] ([member_id], [name])\nVALUES (?, ?)"

    def test_schema_qualified_staging_and_dotted_column(self):
        """Test the staging table splits on its schema dot while column names never split."""
        sql = insert_statement('etl.t_lotus_1', ['member_id', 'tile.color'])
        assert sql.startswith("INSERT INTO [etl].[t_lotus_1] ([member_id], [tile.color])")

    def test_pyformat_placeholder(self):
        """Test pymssql style placeholders."""
        sql = insert_statement('t_lotus_1', ['member_id', 'name'], '%s')
        assert sql.endswith("VALUES (%s, %s)")


class TestBulkLoader:
    """Test loading a buffer into a staging table."""

    def test_loads_in_batches(self, cursor, fake_connection, buffer):
        """Test rows are sent with executemany in batch_size chunks."""
        loaded = BulkLoader(cursor, batch_size=2).load('t_lotus_1', buffer)

        assert loaded == 5
        calls = [e for e in fake_connection.events if e[0] == 'executemany']
        assert [len(c[2]) for c in calls] == [2, 2, 1]
        assert calls[0][2][0] == (1, 'Iroh', 'white lotus')

    def test_enables_fast_executemany(self, cursor, buffer):
        """Test pyodbc array binding is switched on."""
        BulkLoader(cursor).load('t_lotus_1', buffer)
        assert cursor._cursor.fast_executemany is True

    def test_fast_executemany_setting(self, cursor, buffer):
        """Test the fast_executemany setting turns array binding off."""
        settings['fast_executemany'] = False
        BulkLoader(cursor).load('t_lotus_1', buffer)
        assert cursor._cursor.fast_executemany is False

    def test_column_subset(self, cursor, fake_connection, buffer):
        """Test only the requested columns are written, in the requested order."""
        BulkLoader(cursor).load('t_lotus_1', buffer, column_names=['name', 'member_id'])

        sql, rows = fake_connection.events[0][1:]
        assert sql.startswith('INSERT INTO [t_lotus_1] ([name], [member_id])')
        assert rows[0] == ('Iroh', 1)

    def test_empty_buffer(self, cursor, fake_connection):
        """Test an empty buffer sends nothing."""
        descriptor = EntityDescriptor.from_columns('white_lotus', {'member_id': {}})
        empty = TabularProjector().project([], descriptor)

        assert BulkLoader(cursor).load('t_lotus_1', empty) == 0
        assert fake_connection.events == []

    def test_batch_size_from_cursor(self, db, buffer):
        """Test the cursor's batch_size is the default."""
        loader = BulkLoader(db.cursor(batch_size=3))
        assert loader.batch_size == 3

    def test_driver_error(self, cursor, fake_connection, buffer):
        """Test transport errors become BulkLoadFailure."""
        fake_connection.fail_on['INSERT'] = FakeDatabaseError('String or binary data would be truncated')

        with pytest.raises(BulkLoadFailure) as exc_info:
            BulkLoader(cursor).load('t_lotus_1', buffer, table='white_lotus')

        assert exc_info.value.table == 'white_lotus'
        assert exc_info.value.staging == 't_lotus_1'
        assert 'truncated' in str(exc_info.value)

    def test_cancel_between_batches(self, cursor, fake_connection, buffer):
        """Test cancellation stops the load before the next batch."""
        token = CancellationToken()
        fake_connection.on_executemany = token.cancel

        with pytest.raises(MergeCancelled) as exc_info:
            BulkLoader(cursor, batch_size=2).load('t_lotus_1', buffer, cancel=token)

        assert exc_info.value.phase == 'load'
        assert len([e for e in fake_connection.events if e[0] == 'executemany']) == 1
