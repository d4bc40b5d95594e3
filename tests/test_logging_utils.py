# tests/test_logging_utils.py
import pytest
import logging
import os
import time
from pathlib import Path

from bulkmerge import logging_utils
from bulkmerge.defaults import settings
from bulkmerge.logging_utils import setup_logging, errors_logged, cleanup_old_logs, ErrorCountHandler


@pytest.fixture
def temp_log_dir(tmp_path):
    """Directory for log files."""
    return str(tmp_path / 'logs')


@pytest.fixture(autouse=True)
def restore_root_logger():
    """setup_logging() replaces root handlers; put the originals back afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
    logging_utils._error_handler = None


def make_record(level, msg='Sozin\'s comet'):
    return logging.LogRecord(name='test', level=level, pathname='', lineno=0,
                             msg=msg, args=(), exc_info=None)


class TestErrorCountHandler:
    """Test ErrorCountHandler class functionality."""

    def test_counts_errors_and_critical(self):
        """Test that handler counts ERROR and CRITICAL messages."""
        handler = ErrorCountHandler()

        handler.emit(make_record(logging.ERROR))
        handler.emit(make_record(logging.INFO))
        handler.emit(make_record(logging.CRITICAL))

        assert handler.error_count == 2

    def test_ignores_lower_levels(self):
        """Test that handler ignores DEBUG, INFO, WARNING."""
        handler = ErrorCountHandler()
        for level in (logging.DEBUG, logging.INFO, logging.WARNING):
            handler.emit(make_record(level))
        assert handler.error_count == 0

    def test_error_file_created_lazily(self, tmp_path):
        """Test the error log only exists once an error arrives, and holds that error."""
        error_file = tmp_path / 'merge_error.log'
        handler = ErrorCountHandler(str(error_file), formatter=logging.Formatter('%(levelname)s %(message)s'))
        try:
            handler.emit(make_record(logging.WARNING))
            assert not error_file.exists()

            handler.emit(make_record(logging.ERROR, 'staging drop failed'))
            assert error_file.exists()
            handler._error_file_handler.flush()
            assert 'ERROR staging drop failed' in error_file.read_text()
        finally:
            logging.getLogger().removeHandler(handler._error_file_handler)
            handler.close()


class TestSetupLogging:
    """Test setup_logging()."""

    def test_file_names(self, temp_log_dir):
        """Test log files are named after the script with a timestamp."""
        main_log, error_log = setup_logging('nightly_orders', log_dir=temp_log_dir, console=False)

        assert Path(main_log).parent == Path(temp_log_dir)
        assert Path(main_log).name.startswith('nightly_orders_')
        assert error_log == main_log[:-4] + '_error.log'
        assert Path(main_log).exists()
        assert not Path(error_log).exists()

    def test_single_file_without_timestamp(self, temp_log_dir):
        """Test an empty filename_format gives a stable log name."""
        settings['logging']['filename_format'] = ''
        main_log, _ = setup_logging('nightly_orders', log_dir=temp_log_dir, console=False)
        assert Path(main_log).name == 'nightly_orders.log'

    def test_level_from_settings(self, temp_log_dir):
        """Test the level falls back to settings['logging']['level']."""
        settings['logging']['level'] = 'debug'
        setup_logging('nightly_orders', log_dir=temp_log_dir, console=False)
        assert logging.getLogger().level == logging.DEBUG

    def test_replaces_existing_handlers(self, temp_log_dir):
        """Test calling setup twice does not duplicate handlers."""
        setup_logging('nightly_orders', log_dir=temp_log_dir, console=True)
        count = len(logging.getLogger().handlers)
        setup_logging('nightly_orders', log_dir=temp_log_dir, console=True)
        assert len(logging.getLogger().handlers) == count == 3


class TestErrorsLogged:
    """Test errors_logged() function."""

    def test_not_set_up(self):
        """Test errors_logged() without setup_logging() returns None."""
        assert errors_logged() is None

    def test_no_errors_returns_none(self, temp_log_dir):
        """Test that errors_logged() returns None when no errors."""
        setup_logging('nightly_orders', log_dir=temp_log_dir, console=False)

        logging.info("Merged 3 records into fire_nation_army")
        logging.warning("fire_nation_army has no primary key")

        assert errors_logged() is None

    def test_with_errors_split_true(self, temp_log_dir):
        """Test errors_logged() returns error log path when split_errors=True."""
        _, error_log = setup_logging('nightly_orders', log_dir=temp_log_dir,
                                     split_errors=True, console=False)

        logging.getLogger('bulkmerge.etl.coordinator').error("Merge into dbo.Orders rolled back")

        result = errors_logged()
        assert result == error_log
        assert 'rolled back' in Path(result).read_text()

    def test_with_errors_split_false(self, temp_log_dir):
        """Test errors_logged() returns main log path when split_errors=False."""
        main_log, error_log = setup_logging('nightly_orders', log_dir=temp_log_dir,
                                            split_errors=False, console=False)
        assert error_log is None

        logging.critical("Ba Sing Se has fallen")

        assert errors_logged() == main_log
        assert Path(main_log).exists()


class TestCleanupOldLogs:
    """Test cleanup_old_logs()."""

    @pytest.fixture
    def log_dir(self, tmp_path):
        old = tmp_path / 'hundred_year_war.log'
        new = tmp_path / 'harmonic_convergence.log'
        other = tmp_path / 'notes.txt'
        for path in (old, new, other):
            path.write_text('log')
        past = time.time() - 40 * 86400
        os.utime(old, (past, past))
        os.utime(other, (past, past))
        return tmp_path

    def test_removes_old_logs(self, log_dir):
        """Test logs older than the retention period are removed."""
        deleted = cleanup_old_logs(str(log_dir), retention_days=30)

        assert [Path(p).name for p in deleted] == ['hundred_year_war.log']
        assert not (log_dir / 'hundred_year_war.log').exists()
        assert (log_dir / 'harmonic_convergence.log').exists()
        assert (log_dir / 'notes.txt').exists()

    def test_dry_run(self, log_dir):
        """Test dry_run reports without deleting."""
        deleted = cleanup_old_logs(str(log_dir), retention_days=30, dry_run=True)
        assert len(deleted) == 1
        assert (log_dir / 'hundred_year_war.log').exists()

    def test_missing_directory(self, tmp_path):
        """Test a missing directory is not an error."""
        assert cleanup_old_logs(str(tmp_path / 'spirit_world')) == []
