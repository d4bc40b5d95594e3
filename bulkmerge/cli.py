# bulkmerge/cli.py

import argparse
import getpass
import importlib.util
import logging
import sys
from importlib.metadata import PackageNotFoundError, distributions, requires

from . import config
from .database import get_all_drivers
from .etl.bulk_load import insert_statement
from .etl.merge_script import MergePlan, MergeScriptBuilder
from .etl.projection import TabularProjector
from .etl.staging import StagingTableManager, staging_name
from .etl.truncate import truncate
from .exceptions import MergeError

logger = logging.getLogger(__name__)


def _name_cleanup(name):
    """Cleanup module names for search and display"""
    return name.lower().replace('-', '_')


def _get_optional_deps(extra_name='recommended'):
    """Optional dependencies declared for an extra, e.g. 'pyodbc>=4.0'."""
    try:
        reqs = requires('bulkmerge') or []
    except PackageNotFoundError:
        return []
    deps = []
    for req in reqs:
        req = req.replace("'", '"')
        if f'extra == "{extra_name}"' in req:
            deps.append(req.split(';')[0].strip())
    return deps


def checkup():
    """Print installed drivers, ODBC drivers and config health."""
    installed = {_name_cleanup(d.metadata['Name']): d.version for d in distributions()}

    print(f"{'Package':<20} {'Status':<8} {'Version'}")
    print("-" * 40)
    for dep in _get_optional_deps('recommended'):
        name = dep.split('>=')[0].split('==')[0].split('<')[0].strip()
        clean = _name_cleanup(name)
        status = "✓" if importlib.util.find_spec(clean) is not None else "✗"
        print(f"{name:<20} {status:<8} {installed.get(clean, '-')}")

    if importlib.util.find_spec('pyodbc') is not None:
        import pyodbc
        odbc_drivers = pyodbc.drivers()
    else:
        odbc_drivers = []

    print("\nSQL Server drivers   Priority* Status   Version")
    print("-" * 56)
    for name, info in sorted(get_all_drivers().items(), key=lambda item: item[1]['priority']):
        spec = importlib.util.find_spec(info.get('module', name))
        status = "✓" if spec else "✗"
        version = installed.get(_name_cleanup(name), '--')
        odbc_driver_name = info.get('odbc_driver_name')
        note = ''
        if odbc_driver_name:
            note = f"({'✓' if odbc_driver_name in odbc_drivers else '✗'} {odbc_driver_name})"
        print(f"  {name:<18} {info['priority']:<9} {status:<8} {version} {note}")
    print("\n* Lower priority = preferred")

    print("\nConfig Health")
    print("-" * 40)
    for status, msg in config.diagnose_config():
        print(f"{status} {msg}")


def show_sql(mapping: str, config_file=None) -> str:
    """Statements one merge of ``mapping`` would run, without touching a database."""
    registry = config.ConfigManager(config_file).load_mappings()
    descriptor = registry.resolve(mapping)
    buffer = TabularProjector().project([], descriptor)
    staging = staging_name(descriptor)
    plan = MergePlan.from_buffer(descriptor, buffer, staging)

    stager = StagingTableManager(cursor=None)
    statements = [
        stager.create_sql(descriptor, staging),
        insert_statement(staging, plan.staged_columns),
        MergeScriptBuilder().build(plan),
        stager.drop_sql(staging),
    ]
    return ';\n\n'.join(sql.rstrip(';') for sql in statements) + ';'


def main(argv=None):
    parser = argparse.ArgumentParser(prog='bulkmerge', description='bulkmerge command-line utilities')
    parser.add_argument('--config', dest='config_file', help='Config file path')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('checkup', help='Check drivers and configuration')
    subparsers.add_parser('generate-key', help='Generate encryption key')

    key_parser = subparsers.add_parser('store-key',
                                       help='Store encryption key in system keyring (generate if not provided)')
    key_parser.add_argument('key', nargs='?', default=None, help='Encryption key to store')
    key_parser.add_argument('--force', action='store_true', help='Overwrite existing key in the keyring')

    encrypt_parser = subparsers.add_parser('encrypt-config', help='Encrypt passwords in config file')
    encrypt_parser.add_argument('filename', help='Config file path')

    pwd_parser = subparsers.add_parser('encrypt-password', help='Encrypt a password')
    pwd_parser.add_argument('password', nargs='?', help='Password to encrypt (prompted if omitted)')

    sql_parser = subparsers.add_parser('show-sql', help='Print the SQL a merge of a configured mapping runs')
    sql_parser.add_argument('mapping', help='Mapping name from the config file')

    truncate_parser = subparsers.add_parser('truncate', help='Empty the table of a configured mapping')
    truncate_parser.add_argument('mapping', help='Mapping name from the config file')
    truncate_parser.add_argument('--connection', '-c', required=True, help='Connection name')

    args = parser.parse_args(argv)

    try:
        if args.command == 'checkup':
            checkup()
        elif args.command == 'generate-key':
            print(config.generate_encryption_key())
        elif args.command == 'store-key':
            stored = config.store_key(args.key, force=args.force)
            print("Stored encryption key in system keyring" if stored else
                  "Encryption key already stored in system keyring. Use --force to overwrite.")
        elif args.command == 'encrypt-config':
            changes = config.encrypt_config_file(args.filename)
            print(f"Encrypted {changes} passwords in {args.filename}")
        elif args.command == 'encrypt-password':
            password = args.password or getpass.getpass("Enter password to encrypt: ")
            print(config.encrypt_password(password))
        elif args.command == 'show-sql':
            print(show_sql(args.mapping, args.config_file))
        elif args.command == 'truncate':
            manager = config.ConfigManager(args.config_file)
            with config.connect(args.connection, config_file=args.config_file) as db:
                found = truncate(db, manager.load_mappings(), args.mapping)
            print(f"Truncated {args.mapping}" if found else f"No mapping named {args.mapping}")
    except (MergeError, ValueError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
