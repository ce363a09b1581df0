"""
Django settings for app_backend project.

Base settings shared by every environment; prod.py and test.py import this
module and override what differs. Values come from environment variables,
optionally loaded from a .env file next to the backend directory.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent.parent
load_dotenv(os.path.join(BASE_DIR, '..', '.env'))


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "django-insecure-dispatch-dev-key")
DEBUG = os.getenv("DJANGO_DEBUG", "True") == "True"
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "*").split(',')


# ---------------------- Applications ----------------------

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    # Third party
    'rest_framework',
    'channels',

    # Local apps
    'orders',
    'drivers',
    'realtime',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'app_backend.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'app_backend.wsgi.application'
ASGI_APPLICATION = 'app_backend.asgi.application'


# ---------------------- Database ----------------------

DATABASES = {
    'default': {
        'ENGINE': os.getenv("DB_ENGINE", 'django.db.backends.sqlite3'),
        'NAME': os.getenv("DB_NAME", str(BASE_DIR / 'db.sqlite3')),
        'USER': os.getenv("DB_USER", ''),
        'PASSWORD': os.getenv("DB_PASSWORD", ''),
        'HOST': os.getenv("DB_HOST", ''),
        'PORT': os.getenv("DB_PORT", ''),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'


# ---------------------- Internationalization ----------------------

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'


# ---------------------- REST Framework ----------------------

REST_FRAMEWORK = {
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.AllowAny',
    ],
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
}


# ---------------------- Redis / Channels / Celery ----------------------

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_GEO_URL = os.getenv("REDIS_GEO_URL", REDIS_URL)

CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels_redis.core.RedisChannelLayer",
        "CONFIG": {
            "hosts": [REDIS_URL],
        },
    }
}

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", REDIS_URL)
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE


# ---------------------- Dispatch & Tracking ----------------------

DISPATCH_CONFIG = {
    # Radius expansion (km)
    "INITIAL_RADIUS_KM": float(os.getenv("INITIAL_RADIUS_KM", 5.0)),
    "MAX_RADIUS_KM": float(os.getenv("MAX_RADIUS_KM", 25.0)),
    "RADIUS_STEP_KM": float(os.getenv("RADIUS_STEP_KM", 5.0)),

    # Tracking display estimates
    "ASSUMED_SPEED_KMH": float(os.getenv("ASSUMED_SPEED_KMH", 30.0)),
    "STALENESS_WINDOW_SECONDS": float(os.getenv("STALENESS_WINDOW_SECONDS", 30.0)),
    "SMOOTHER_MIN_DURATION_SECONDS": float(os.getenv("SMOOTHER_MIN_DURATION_SECONDS", 0.5)),
    "SMOOTHER_MAX_DURATION_SECONDS": float(os.getenv("SMOOTHER_MAX_DURATION_SECONDS", 2.0)),

    # Candidate source: "database" or "redis"
    "CANDIDATE_SOURCE": os.getenv("CANDIDATE_SOURCE", "database"),
    "RESERVATION_TTL_SECONDS": int(os.getenv("RESERVATION_TTL_SECONDS", 300)),

    # Background retry
    "REDISPATCH_COUNTDOWN_SECONDS": int(os.getenv("REDISPATCH_COUNTDOWN_SECONDS", 30)),
}


# ---------------------- Logging ----------------------

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{asctime} {levelname} {name} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": LOG_LEVEL,
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": os.getenv("DJANGO_LOG_LEVEL", "WARNING"),
            "propagate": False,
        },
    },
}
