import redis
from django.conf import settings

##### NAMESPACES
ALLOCATION_CURSOR_REDIS_KEY = "ALLOCATION_CURSORS" #dict where key is normalised language, value is next agent index
ALLOCATION_CURSOR_LOCK_REDIS_KEY = "ALLOCATION_CURSOR_LOCK:" #one lock per language
RUN_START_LOCK_REDIS_KEY = "RUN_START_LOCK:" #one lock per run kind (sampling, allocation)

LOCK_TIMEOUTS = 3
CURSOR_LOCK_TIMEOUT = 60 #held while one language is being assigned
SLEEP = 0.05
#####


conn = redis.Redis.from_url(
    settings.REDIS_URL,
    decode_responses=True
)
