"""
Django settings for dispatch_backend project.

Values come from the environment (optionally a .env file next to backend/).
Production overrides live in prod.py, test overrides in test.py.
"""

import os
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent.parent
load_dotenv(os.path.join(BASE_DIR, '..', '.env'))

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "django-insecure-dispatch-dev-key")
DEBUG = os.getenv("DJANGO_DEBUG", "True") == "True"
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "*").split(',')


INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'rest_framework',
    'channels',

    'orders',
    'drivers',
    'realtime',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'dispatch_backend.urls'

ASGI_APPLICATION = 'dispatch_backend.asgi.application'


# Database
DATABASES = {
    'default': {
        'ENGINE': os.getenv("DB_ENGINE", 'django.db.backends.sqlite3'),
        'NAME': os.getenv("DB_NAME", str(BASE_DIR / 'db.sqlite3')),
        'USER': os.getenv("DB_USER", ""),
        'PASSWORD': os.getenv("DB_PASSWORD", ""),
        'HOST': os.getenv("DB_HOST", ""),
        'PORT': os.getenv("DB_PORT", ""),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True


# Django REST framework
REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': (
        'realtime.auth.CallerJWTAuthentication',
    ),
    'DEFAULT_PERMISSION_CLASSES': (
        'rest_framework.permissions.IsAuthenticated',
    ),
    'UNAUTHENTICATED_USER': None,
    'EXCEPTION_HANDLER': 'orders.api_errors.dispatch_exception_handler',
}

# Tokens are issued by the identity service; only verification happens here
SIMPLE_JWT = {
    'ACCESS_TOKEN_LIFETIME': timedelta(hours=1),
    'SIGNING_KEY': os.getenv("JWT_SIGNING_KEY", SECRET_KEY),
    'USER_ID_CLAIM': 'user_id',
}


# Channels
CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels.layers.InMemoryChannelLayer",
    }
}


# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE
CELERY_BEAT_SCHEDULE = {
    'sweep-offer-timeouts': {
        'task': 'orders.tasks.sweep_offer_timeouts',
        'schedule': float(os.getenv("DISPATCH_SWEEP_INTERVAL_SECONDS", 10)),
    },
}

REDIS_GEO_URL = os.getenv("REDIS_GEO_URL", CELERY_BROKER_URL)


# Dispatch
DISPATCH_ORDER_STORE = 'orders.store.DjangoOrderStore'
DISPATCH_DRIVER_STORE = 'drivers.store.DjangoDriverStore'
DISPATCH_GEO_LOOKUP = os.getenv("DISPATCH_GEO_LOOKUP", 'drivers.store.DjangoDriverLocator')
DISPATCH_EVENT_TRANSPORT = 'realtime.transport.ChannelLayerTransport'

DISPATCH_SEARCH_RADIUS_KM = float(os.getenv("DISPATCH_SEARCH_RADIUS_KM", 5.0))
DISPATCH_MAX_CANDIDATES = int(os.getenv("DISPATCH_MAX_CANDIDATES", 10))
DISPATCH_OFFER_WINDOW_SECONDS = int(os.getenv("DISPATCH_OFFER_WINDOW_SECONDS", 20))
DISPATCH_MAX_OFFER_ROUNDS = int(os.getenv("DISPATCH_MAX_OFFER_ROUNDS", 3))
DISPATCH_SCHEDULE_OFFER_EXPIRY = True
DISPATCH_SUBSCRIBER_BUFFER_SIZE = 64

DISPATCH_LOCATION_MIN_INTERVAL_SECONDS = 3.0
DISPATCH_LOCATION_MIN_DISTANCE_METERS = 10.0
DISPATCH_LOCATION_MAX_ACCURACY_METERS = 100.0


# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'orders': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'drivers': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'realtime': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'services': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
    },
}
