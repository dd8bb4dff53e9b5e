# config.py
import os
from dotenv import load_dotenv

basedir = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(basedir, '.env'))


def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return int(value)


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'chargesync-dev-key'

    # DATABASE_URL overrides the local SQLite file (data/chargesync.db when data/ exists)
    data_dir = os.path.join(basedir, 'data')
    default_db_path = os.path.join(data_dir if os.path.isdir(data_dir) else basedir, 'chargesync.db')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:///' + default_db_path
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # SQLite waits up to 30 s for a writer instead of failing with "database is locked"
    SQLALCHEMY_ENGINE_OPTIONS = {
        'connect_args': {
            'timeout': 30,
            'check_same_thread': False,  # Cycles run from scheduler threads
        },
        'pool_pre_ping': True,
    }

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Upstream APIs
    FOXESS_BASE_URL = os.environ.get('FOXESS_BASE_URL', 'https://www.foxesscloud.com')
    AMBER_BASE_URL = os.environ.get('AMBER_BASE_URL', 'https://api.amber.com.au/v1')
    OPEN_METEO_FORECAST_URL = os.environ.get('OPEN_METEO_FORECAST_URL', 'https://api.open-meteo.com/v1/forecast')
    OPEN_METEO_GEOCODE_URL = os.environ.get('OPEN_METEO_GEOCODE_URL', 'https://geocoding-api.open-meteo.com/v1/search')
    HTTP_TIMEOUT = _env_int('HTTP_TIMEOUT', 10)  # seconds, per upstream call

    # Automation cycle
    AUTOMATION_INTERVAL_SECONDS = _env_int('AUTOMATION_INTERVAL_SECONDS', 60)
    DEFAULT_TIMEZONE = os.environ.get('DEFAULT_TIMEZONE', 'Australia/Sydney')

    # Cache TTL defaults in seconds (users may override per source)
    CACHE_TTL_PRICES = _env_int('CACHE_TTL_PRICES', 60)
    CACHE_TTL_TELEMETRY = _env_int('CACHE_TTL_TELEMETRY', 300)
    CACHE_TTL_WEATHER = _env_int('CACHE_TTL_WEATHER', 1800)
    CACHE_TTL_SITES = _env_int('CACHE_TTL_SITES', 7 * 24 * 3600)

    # Hardware call retry policy
    HARDWARE_RETRY_ATTEMPTS = _env_int('HARDWARE_RETRY_ATTEMPTS', 3)
    HARDWARE_RETRY_BASE_DELAY = float(os.environ.get('HARDWARE_RETRY_BASE_DELAY', '1.0'))

    # Export limit restored when curtailment ends (W)
    CURTAILMENT_RESTORE_EXPORT_LIMIT = _env_int('CURTAILMENT_RESTORE_EXPORT_LIMIT', 12000)


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ENGINE_OPTIONS = {
        'connect_args': {'check_same_thread': False},
    }
    HARDWARE_RETRY_BASE_DELAY = 0.0
    LOG_LEVEL = 'DEBUG'
