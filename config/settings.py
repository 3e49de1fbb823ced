# settings.py
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_list(name, default=''):
    return [item.strip() for item in os.getenv(name, default).split(',') if item.strip()]


SECRET_KEY = os.getenv('DJANGO_SECRET_KEY', 'classroom-sync-dev-key')
DEBUG = os.getenv('DJANGO_DEBUG', '1') == '1'

INSTALLED_APPS = [
    'rest_framework',
    'huey.contrib.djhuey',
    'apps.classroom',
    'apps.sync',
]

# 只在内存中镜像后端数据，不需要本地数据库
DATABASES = {}

USE_TZ = True
TIME_ZONE = 'UTC'

REST_FRAMEWORK = {
    'UNAUTHENTICATED_USER': None,
}

# Hosted backend
SUPABASE_URL = os.getenv('SUPABASE_URL', '')
SUPABASE_ANON_KEY = os.getenv('SUPABASE_ANON_KEY', '')

REQUEST_TIMEOUT = float(os.getenv('REQUEST_TIMEOUT', '15'))
SNAPSHOT_TIMEOUT = float(os.getenv('SNAPSHOT_TIMEOUT', '30'))
REALTIME_HEARTBEAT = float(os.getenv('REALTIME_HEARTBEAT', '25'))
RECONNECT_DELAY = float(os.getenv('RECONNECT_DELAY', '1'))
RECONNECT_MAX_DELAY = float(os.getenv('RECONNECT_MAX_DELAY', '30'))

# Collections that may come up empty when their initial read fails
NON_CRITICAL_COLLECTIONS = env_list('NON_CRITICAL_COLLECTIONS', 'chat_messages')

TEST_DURATION_SECONDS = int(os.getenv('TEST_DURATION_SECONDS', '600'))

AVATAR_BUCKET = os.getenv('AVATAR_BUCKET', 'avatars')
WORD_IMAGE_BUCKET = os.getenv('WORD_IMAGE_BUCKET', 'word_images')

HUEY = {
    'huey_class': 'huey.SqliteHuey',
    'name': 'classroom-sync',
    'filename': str(BASE_DIR / 'huey.db'),
    'immediate': os.getenv('HUEY_IMMEDIATE', '1' if DEBUG else '0') == '1',
}

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'apps': {
            'handlers': ['console'],
            'level': os.getenv('CLASSROOM_LOG_LEVEL', 'INFO'),
        },
    },
}
