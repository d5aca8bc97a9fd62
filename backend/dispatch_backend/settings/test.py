from .settings import *

SECRET_KEY = "dispatch-test-secret-key-with-enough-length-for-hs256"
SIMPLE_JWT = {**SIMPLE_JWT, 'SIGNING_KEY': SECRET_KEY}

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels.layers.InMemoryChannelLayer",
    }
}

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"

# Eager mode ignores countdown; tests drive offer timeouts explicitly
DISPATCH_SCHEDULE_OFFER_EXPIRY = False
DISPATCH_GEO_LOOKUP = 'drivers.store.DjangoDriverLocator'

LOGGING['loggers'] = {
    name: {**config, 'level': 'WARNING'}
    for name, config in LOGGING['loggers'].items()
}
