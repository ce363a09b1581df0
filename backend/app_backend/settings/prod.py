from .settings import *
import os

DEBUG = False
SECRET_KEY = os.environ["DJANGO_SECRET_KEY"]
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1").split(',')

SESSION_COOKIE_SECURE = True
CSRF_COOKIE_SECURE = True

# Several ASGI/Celery processes share one driver pool, so reservations live in Redis
DISPATCH_CONFIG = {
    **DISPATCH_CONFIG,
    "CANDIDATE_SOURCE": os.getenv("CANDIDATE_SOURCE", "redis"),
}

CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels_redis.core.RedisChannelLayer",
        "CONFIG": {
            "hosts": [REDIS_URL],
            "capacity": int(os.getenv("CHANNEL_CAPACITY", 1500)),  # Snapshots arrive every few seconds per order
            "expiry": 10,
        },
    }
}

LOGGING["root"]["level"] = os.getenv("LOG_LEVEL", "WARNING")
