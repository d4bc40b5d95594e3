# tests/test_staging.py
import re
import threading

import pytest

from bulkmerge.defaults import settings
from bulkmerge.etl.staging import StagingTableManager, staging_name
from bulkmerge.exceptions import CleanupFailure, StagingCreationFailure
from bulkmerge.schema import EntityDescriptor
from conftest import FakeDatabaseError


@pytest.fixture
def descriptor():
    return EntityDescriptor.from_columns('dbo.Orders', {
        'Id': {'primary_key': True, 'identity': True},
        'Customer': {},
    })


class TestStagingName:
    """Test staging table name generation."""

    def test_contains_target_name(self, descriptor):
        """Test the name is recognizable from the target table."""
        name = staging_name(descriptor)
        assert name.startswith('t_dbo_Orders_')
        assert re.fullmatch(r't_dbo_Orders_[0-9a-f]+_[0-9a-f]+_[0-9a-f]{8}', name)

    def test_unique_in_tight_loop(self, descriptor):
        """Test rapid sequential calls never collide."""
        names = {staging_name(descriptor) for _ in range(1000)}
        assert len(names) == 1000

    def test_unique_across_threads(self, descriptor):
        """Test concurrent calls never collide."""
        names = []
        lock = threading.Lock()

        def worker():
            local = [staging_name(descriptor) for _ in range(200)]
            with lock:
                names.extend(local)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(names) == 1600
        assert len(set(names)) == 1600

    def test_prefix_and_schema(self, descriptor):
        """Test prefix and staging schema overrides."""
        name = staging_name(descriptor, prefix='stage_', schema='etl')
        assert name.startswith('etl.stage_dbo_Orders_')

    def test_schema_from_settings(self, descriptor):
        """Test the staging_schema setting qualifies the name."""
        settings['staging_schema'] = 'scratch'
        assert staging_name(descriptor).startswith('scratch.t_dbo_Orders_')

    def test_long_table_name_truncated(self):
        """Test names stay within the SQL Server identifier limit."""
        descriptor = EntityDescriptor.from_columns('x' * 120, {'id': {}})
        name = staging_name(descriptor)
        assert len(name) <= 128

    def test_odd_characters_sanitized(self):
        """Test spaces and punctuation in the target name do not leak into the staging name."""
        descriptor = EntityDescriptor.from_columns('Order Lines', {'id': {}})
        assert staging_name(descriptor).startswith('t_Order_Lines_')


class TestStagingTableManager:
    """Test staging table creation and removal."""

    def test_create_sql_drops_identity(self, descriptor):
        """Test the clone copies structure only and loses the IDENTITY property."""
        sql = StagingTableManager(None).create_sql(descriptor, 't_dbo_Orders_1')
        assert sql == (
            "SELECT TOP 0 * INTO [t_dbo_Orders_1] FROM [dbo].[Orders]\n"
            "UNION ALL\n"
            "SELECT TOP 0 * FROM [dbo].[Orders]"
        )

    def test_create_staging(self, cursor, fake_connection, descriptor):
        """Test create_staging issues the clone statement."""
        StagingTableManager(cursor).create_staging(descriptor, 't_dbo_Orders_1')
        assert fake_connection.statements()[0].startswith('SELECT TOP 0 * INTO [t_dbo_Orders_1]')

    def test_create_staging_failure(self, cursor, fake_connection, descriptor):
        """Test driver errors become StagingCreationFailure with context."""
        fake_connection.fail_on['INTO'] = FakeDatabaseError('permission denied in database')

        with pytest.raises(StagingCreationFailure) as exc_info:
            StagingTableManager(cursor).create_staging(descriptor, 't_dbo_Orders_1')

        err = exc_info.value
        assert err.table == 'dbo.Orders'
        assert err.staging == 't_dbo_Orders_1'
        assert err.phase == 'create_staging'
        assert isinstance(err.__cause__, FakeDatabaseError)
        assert 'permission denied' in str(err)

    def test_drop_if_exists(self, cursor, fake_connection):
        """Test drop is idempotent SQL."""
        manager = StagingTableManager(cursor)
        manager.drop_if_exists('etl.t_dbo_Orders_1')
        manager.drop_if_exists('etl.t_dbo_Orders_1')
        assert fake_connection.statements() == ['DROP TABLE IF EXISTS [etl].[t_dbo_Orders_1]'] * 2

    def test_drop_failure(self, cursor, fake_connection):
        """Test driver errors on drop become CleanupFailure."""
        fake_connection.fail_on['DROP'] = FakeDatabaseError('lock timeout')
        with pytest.raises(CleanupFailure) as exc_info:
            StagingTableManager(cursor).drop_if_exists('t_x_1', table='x')
        assert exc_info.value.phase == 'cleanup'
