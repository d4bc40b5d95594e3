# bulkmerge/defaults.py
"""Default settings - no imports to avoid circular dependencies."""

settings = {
    'default_batch_size': 1000,
    'default_driver': 'pyodbc',
    'staging_prefix': 't_',
    'staging_schema': None,      # None keeps staging tables in the login's default schema
    'update_key_columns': True,  # key columns are written in WHEN MATCHED as well
    'fast_executemany': True,    # pyodbc only
    'max_identifier_length': 128,
    'logging': {
        'directory': './logs',
        'level': 'INFO',
        'format': '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        'timestamp_format': '%Y-%m-%d %H:%M:%S',
        'filename_format': '%Y%m%d_%H%M%S',  # Set to '' for single log file (no timestamp)
        'split_errors': True,
        'console': True,
        'retention_days': 30,
    }
}
