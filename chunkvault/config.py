import os


def _env_list(name, default):
    """Comma-separated environment variable as a list."""
    value = os.environ.get(name)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(',') if item.strip()]


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, '') else default


DEFAULT_EXCLUDES = ['*.sqlite3*', '*.log', '**/cache/*', '**/tmp/*']


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY')
    JSON_SORT_KEYS = False

    # Repository
    REPOSITORY_PATH = os.environ.get('REPOSITORY_PATH') or '/data/repository'
    PASSPHRASE = os.environ.get('PASSPHRASE')
    PASSPHRASE_SALT = os.environ.get('PASSPHRASE_SALT') or 'backup-salt'
    CHUNK_SIZE = _env_int('CHUNK_SIZE', 1024 * 1024)
    COMPRESSION = os.environ.get('COMPRESSION') or 'zlib'
    LOCK_TIMEOUT = float(os.environ.get('LOCK_TIMEOUT') or 30)

    # Argon2id key derivation
    KDF_TIME_COST = _env_int('KDF_TIME_COST', 3)
    KDF_MEMORY_COST = _env_int('KDF_MEMORY_COST', 65536)  # KiB
    KDF_PARALLELISM = _env_int('KDF_PARALLELISM', 4)

    # Backup job
    BACKUP_PATHS = _env_list('BACKUP_PATHS', [])
    BACKUP_EXCLUDES = _env_list('BACKUP_EXCLUDES', DEFAULT_EXCLUDES)
    BACKUP_WORKERS = _env_int('BACKUP_WORKERS', 4)

    # Retention
    RETENTION_KEEP_DAILY = _env_int('RETENTION_KEEP_DAILY', 30)
    RETENTION_KEEP_WEEKLY = _env_int('RETENTION_KEEP_WEEKLY', 12)
    RETENTION_KEEP_MONTHLY = _env_int('RETENTION_KEEP_MONTHLY', 6)
    RETENTION_KEEP_LAST = _env_int('RETENTION_KEEP_LAST', 0)

    # Scheduler
    BACKUP_SCHEDULE = os.environ.get('BACKUP_SCHEDULE') or '0 2 * * *'
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'

    # API
    API_TOKEN = os.environ.get('API_TOKEN')

    # Logging (defaults to <REPOSITORY_PATH>/logs)
    LOG_DIR = os.environ.get('LOG_DIR')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    REPOSITORY_PATH = os.environ.get('REPOSITORY_PATH') or os.path.join(DATA_DIR, 'repository')


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    SCHEDULER_ENABLED = False
    PASSPHRASE = 'test-passphrase'
    BACKUP_PATHS = []
    BACKUP_WORKERS = 2
    LOCK_TIMEOUT = 2.0
    API_TOKEN = None

    # Cheap key derivation for tests
    KDF_TIME_COST = 1
    KDF_MEMORY_COST = 64
    KDF_PARALLELISM = 1


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
