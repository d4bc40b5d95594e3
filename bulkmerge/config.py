# bulkmerge/config.py
"""
Configuration management for connections, merge settings and table mappings.
Supports YAML configuration files with optional password encryption.
"""

import os
import logging
from pathlib import Path
from textwrap import dedent
from typing import Dict, Any, Optional, List, Tuple

import keyring
import yaml
from cryptography.fernet import Fernet

from .defaults import settings
from .database import Database
from .cursors import Cursor
from .schema import SchemaRegistry

logger = logging.getLogger(__name__)

KEYRING_SERVICE = 'bulkmerge'
KEYRING_USERNAME = 'encryption_key'
ENV_KEY = 'BULKMERGE_ENCRYPTION_KEY'

CONFIG_LOCATIONS = (
    Path('bulkmerge.yml'),
    Path('bulkmerge.yaml'),
    Path.home() / '.config' / 'bulkmerge.yml',
    Path.home() / '.config' / 'bulkmerge.yaml',
)

CONNECTION_PARAMS = {
    'host', 'port', 'database', 'user', 'password', 'trusted_connection', 'encrypt',
    'trustservercertificate', 'odbc_driver', 'app', 'timeout', 'login_timeout', 'charset',
    'appname', 'tds_version'
}

SECTIONS = ('settings', 'connections', 'passwords', 'mappings')


def _stored_key() -> Optional[str]:
    """Key saved in the system keyring; None when empty or the keyring is unusable."""
    try:
        return keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
    except Exception as e:
        logger.warning(f"System keyring unavailable: {e}")
        return None


def _encryption_key() -> bytes:
    """The Fernet key from ``BULKMERGE_ENCRYPTION_KEY``, else from the keyring."""
    key, source = os.environ.get(ENV_KEY), ENV_KEY
    if not key:
        key, source = _stored_key(), 'system keyring'
    if not key:
        raise ValueError(dedent(f"""\
        No encryption key in {ENV_KEY} or the system keyring.
        Run `bulkmerge store-key` to save one to the keyring,
        or `bulkmerge generate-key` and export it as {ENV_KEY}."""))
    logger.debug(f"Encryption key taken from {source}")
    return key.encode()


def _valid_fernet(key: str) -> bool:
    try:
        Fernet(key.encode())
    except (ValueError, TypeError):
        return False
    return True


def _substitute_env(value: Any) -> Any:
    """Resolve a ``${VAR}`` value from the environment."""
    if not (isinstance(value, str) and value.startswith('${') and value.endswith('}')):
        return value
    env_var = value[2:-1]
    if env_var not in os.environ:
        raise ValueError(f"Environment variable {env_var} not set")
    return os.environ[env_var]


def _password_entries(config: Dict[str, Any]) -> List[dict]:
    return list(config.get('connections', {}).values()) + list(config.get('passwords', {}).values())


def diagnose_config(config_file: Optional[str] = None) -> List[Tuple[str, str]]:
    """
    Config health check as ``(status, message)`` pairs.

    Status is ``✓`` for fine, ``✗`` for a problem and ``?`` for not configured.
    """
    try:
        mgr = ConfigManager(config_file)
    except (FileNotFoundError, ValueError) as e:
        return [('✗', f"Cannot load config: {e}")]
    results = [('✓', f"Using {mgr.config_file}")]

    env_key, keyring_key = os.getenv(ENV_KEY), _stored_key()
    if env_key:
        results.append(('✓', "Env key valid") if _valid_fernet(env_key) else ('✗', "Env key invalid"))
    else:
        results.append(('?', f"{ENV_KEY} not set"))
    if keyring_key:
        results.append(('✓', "Keyring key valid") if _valid_fernet(keyring_key) else ('✗', "Keyring key invalid"))
    else:
        results.append(('?', "Keyring empty"))
    if env_key and keyring_key and env_key != keyring_key:
        results.append(('✗', f"{ENV_KEY} differs from the keyring key"))

    entries = _password_entries(mgr.config)
    encrypted = sum('encrypted_password' in entry for entry in entries)
    plain = sum(1 for entry in entries
                if 'password' in entry and not str(entry['password']).startswith('${'))
    results.append(('✓', f"{encrypted} encrypted passwords"))
    results.append(('✗', f"{plain} unencrypted passwords!") if plain else ('✓', "No unencrypted passwords"))
    results.append(('✓', f"{len(mgr.config.get('mappings', {}))} table mappings"))
    return results


class ConfigManager:
    """
    Manage bulkmerge configuration from YAML files.

    Configuration File Structure
    ----------------------------
    ::

        # bulkmerge.yml
        settings:
          default_batch_size: 5000
          staging_schema: etl
          update_key_columns: false
          logging:
            level: DEBUG

        connections:
          warehouse:
            type: sqlserver
            driver: pyodbc
            host: sql01
            database: Warehouse
            user: loader
            encrypted_password: gAAAAABh...
            cursor:
              batch_size: 5000

        passwords:
          vendor_api:
            encrypted_password: gAAAAABh...

        mappings:
          Order:
            table: dbo.Orders
            columns:
              Id: {field: id, primary_key: true, identity: true}
              Customer: {field: customer}
              Total: {field: total}

    Without an explicit ``config_file`` the first existing file of
    :data:`CONFIG_LOCATIONS` is used: ``bulkmerge.yml`` (or ``.yaml``) in the
    working directory, then in ``~/.config``.

    Encrypted passwords need the key in ``BULKMERGE_ENCRYPTION_KEY`` or the
    system keyring. Plain passwords may reference the environment as
    ``${VAR_NAME}``. ``settings`` are merged into
    :data:`bulkmerge.defaults.settings` on load.
    """

    def __init__(self, config_file: Optional[str] = None):
        self.config_file = self._locate(config_file)
        self.config = self._read()
        self._fernet = None
        self._apply_settings()

    @staticmethod
    def _locate(config_file: Optional[str]) -> Path:
        if config_file:
            if not Path(config_file).exists():
                raise FileNotFoundError(f"Config file not found: {config_file}")
            return Path(config_file)
        found = next((path for path in CONFIG_LOCATIONS if path.exists()), None)
        if found is None:
            searched = ', '.join(str(path) for path in CONFIG_LOCATIONS)
            raise FileNotFoundError(f"No bulkmerge.yml found in: {searched}")
        return found

    def _read(self) -> Dict[str, Any]:
        try:
            with open(self.config_file, encoding='utf-8') as fp:
                config = yaml.safe_load(fp) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ValueError(f"Cannot read {self.config_file}: {e}")
        self._validate(config)
        logger.info(f"Loaded config from {self.config_file}")
        return config

    def _validate(self, config: Any) -> None:
        where = self.config_file
        if not isinstance(config, dict):
            raise ValueError(f"{where} must contain a YAML mapping at the top level")
        for section in SECTIONS:
            if not isinstance(config.get(section, {}), dict):
                raise ValueError(f"{where}: '{section}' must be a dictionary")

        for name, conn in config.get('connections', {}).items():
            if not isinstance(conn, dict):
                raise ValueError(f"{where}: connection '{name}' must be a dictionary")
            if conn.get('type', 'sqlserver') != 'sqlserver':
                raise ValueError(f"{where}: connection '{name}' has type '{conn['type']}', "
                                 f"only sqlserver is supported")

        for name, entry in config.get('passwords', {}).items():
            if not isinstance(entry, dict) or not ({'password', 'encrypted_password'} & set(entry)):
                raise ValueError(f"{where}: password entry '{name}' is invalid, "
                                 f"'password' or 'encrypted_password' is required")

        for name, mapping in config.get('mappings', {}).items():
            if not isinstance(mapping, dict) or 'columns' not in mapping:
                raise ValueError(f"Invalid mapping '{name}' in {where}: 'columns' is required")

    def _apply_settings(self) -> None:
        """Merge config settings into the global defaults; nested dicts are updated in place."""
        for key, value in self.config.get('settings', {}).items():
            current = settings.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                current.update(value)
            else:
                settings[key] = value

    def get_setting(self, key: str, default: Any = None) -> Any:
        """
        Look up a value from the ``settings`` section of this file.

        ``key`` may be dotted (``'logging.level'``) to reach nested settings.

        Example:
            batch_size = config.get_setting('default_batch_size', 1000)
        """
        value = self.config.get('settings', {})
        for part in key.split('.'):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(_encryption_key())
        return self._fernet

    def decrypt_password(self, encrypted_password: str) -> str:
        try:
            return self._get_fernet().decrypt(encrypted_password.encode()).decode()
        except Exception as e:
            raise ValueError(f"Failed to decrypt password: {e}")

    def encrypt_password(self, password: str) -> str:
        try:
            return self._get_fernet().encrypt(password.encode()).decode()
        except Exception as e:
            raise ValueError(f"Failed to encrypt password: {e}")

    def _secret(self, entry: dict) -> str:
        if 'encrypted_password' in entry:
            return self.decrypt_password(entry['encrypted_password'])
        return _substitute_env(entry['password'])

    def _lookup(self, section: str, kind: str, name: str) -> dict:
        entries = self.config.get(section, {})
        if name not in entries:
            raise ValueError(f"{kind} '{name}' not found in config. Available: {sorted(entries)}")
        return entries[name]

    def get_connection_config(self, name: str) -> Dict[str, Any]:
        """Connection settings with the password decrypted or resolved from the environment."""
        config = dict(self._lookup('connections', 'Connection', name))
        if 'password' in config or 'encrypted_password' in config:
            config['password'] = self._secret(config)
            config.pop('encrypted_password', None)
        return config

    def list_connections(self) -> list:
        return list(self.config.get('connections', {}))

    def get_password(self, name: str) -> str:
        """
        Get a stored password by name.

        Raises:
            ValueError: If password not found or decryption fails
        """
        return self._secret(self._lookup('passwords', 'Password', name))

    def list_mappings(self) -> list:
        return list(self.config.get('mappings', {}))

    def load_mappings(self, registry: Optional[SchemaRegistry] = None) -> SchemaRegistry:
        """
        Register every entry of the ``mappings`` section.

        Each mapping name becomes a string type id; ``table`` defaults to the
        mapping name and may be schema qualified.

        Example:
            registry = config.load_mappings()
            bulk_merge(db, registry, 'Order', orders)
        """
        registry = registry if registry is not None else SchemaRegistry()
        for name, mapping in self.config.get('mappings', {}).items():
            registry.register_columns(name, mapping.get('table', name), mapping['columns'],
                                      schema=mapping.get('schema'))
        return registry


_config_manager: Optional[ConfigManager] = None


def _get_manager(config_file: Optional[str] = None) -> ConfigManager:
    """An explicit file gets a fresh manager; otherwise the shared one is loaded on first use."""
    global _config_manager
    if config_file:
        return ConfigManager(config_file)
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def set_config_file(config_file: str) -> None:
    """Load ``config_file`` as the shared configuration for the module level helpers."""
    global _config_manager
    _config_manager = ConfigManager(config_file)


def _cursor_settings(name: str, cursor_settings: Optional[dict]) -> Optional[dict]:
    if cursor_settings is None:
        return None
    unknown = set(cursor_settings) - set(Cursor.WRAPPER_SETTINGS)
    if unknown:
        logger.warning(f"Connection {name}: ignoring unknown cursor settings {sorted(unknown)}")
    return {key: val for key, val in cursor_settings.items() if key in Cursor.WRAPPER_SETTINGS}


def connect(name: str, password: Optional[str] = None, config_file: Optional[str] = None) -> Database:
    """
    Connect to a named SQL Server connection from configuration.

    Example:
        db = connect('warehouse')
        bulk_merge(db, registry, Order, orders)
    """
    config = _get_manager(config_file).get_connection_config(name)
    if password:
        config['password'] = password
    shown = {key: val for key, val in config.items() if key != 'password'}
    logger.debug(f"Connecting to {name} with {shown}")

    driver = config.get('driver') or settings.get('default_driver')
    cursor_settings = _cursor_settings(name, config.get('cursor'))
    params = {key: val for key, val in config.items() if key in CONNECTION_PARAMS}
    db = Database.create(driver=driver, cursor_settings=cursor_settings, **params)
    db.name = name
    return db


def get_password(name: str, config_file: Optional[str] = None) -> str:
    return _get_manager(config_file).get_password(name)


def get_setting(key: str, default: Any = None, config_file: Optional[str] = None) -> Any:
    """
    Module level :meth:`ConfigManager.get_setting` on the shared configuration.

    Example:
        batch_size = get_setting('default_batch_size', 1000)
    """
    return _get_manager(config_file).get_setting(key, default)


def generate_encryption_key() -> str:
    """Generate a Fernet key for ``BULKMERGE_ENCRYPTION_KEY`` or the keyring."""
    return Fernet.generate_key().decode()


def store_key(key: Optional[str] = None, force: bool = False) -> bool:
    """
    Save an encryption key to the system keyring, generating one when ``key`` is None.

    Returns False, leaving the keyring untouched, when a key is already stored
    and ``force`` is not set.
    """
    existing = _stored_key()
    if existing and not force:
        logger.warning("The system keyring already holds a bulkmerge key; pass force to replace it")
        return False

    if key is None:
        key = generate_encryption_key()
    elif not _valid_fernet(key):
        raise ValueError("Invalid encryption key. Must be 32 url-safe base64-encoded bytes.")

    if existing:
        logger.warning("Replacing the bulkmerge key in the system keyring")
    try:
        keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
    except Exception as e:
        logger.error(f"Could not save the key to the system keyring: {e}")
        raise ValueError(f"Could not save the key to the system keyring: {e}") from e
    logger.info("Saved encryption key to the system keyring")
    return True


def encrypt_password(password: str, encryption_key: Optional[str] = None) -> str:
    """
    Encrypt a password for the config file.

    Args:
        password: Password to encrypt
        encryption_key: Key to use; defaults to the environment variable or keyring key
    """
    key = encryption_key.encode() if encryption_key else _encryption_key()
    return Fernet(key).encrypt(password.encode()).decode()


def encrypt_config_file(filename: str, encryption_key: Optional[str] = None) -> int:
    """
    Replace every plain text password in ``filename`` with ``encrypted_password``.

    ``${VAR}`` references are left alone. Returns the number of passwords encrypted.
    """
    with open(filename, encoding='utf-8') as fp:
        config = yaml.safe_load(fp) or {}

    pending = [entry for entry in _password_entries(config)
               if entry.get('password') and 'encrypted_password' not in entry
               and not str(entry['password']).startswith('${')]
    for entry in pending:
        entry['encrypted_password'] = encrypt_password(str(entry.pop('password')), encryption_key)

    if pending:
        with open(filename, 'w', encoding='utf-8') as fp:
            yaml.safe_dump(config, fp, default_flow_style=False, sort_keys=False)
        logger.info(f"Encrypted {len(pending)} passwords in {filename}")
    return len(pending)
