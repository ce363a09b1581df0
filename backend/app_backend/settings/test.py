from .settings import *

DEBUG = False
SECRET_KEY = "test-secret-key"

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

DISPATCH_CONFIG = {
    **DISPATCH_CONFIG,
    "CANDIDATE_SOURCE": "database",
    "REDISPATCH_COUNTDOWN_SECONDS": 0,
}

LOGGING["root"]["level"] = "WARNING"
