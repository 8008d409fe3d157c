import os

import redis
from dotenv import load_dotenv

load_dotenv()

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# A single client carries both the rating event stream and the stats cache.
# redis-py keeps its own connection pool, nothing is opened until first use.
redis_client = redis.Redis.from_url(
    REDIS_URL,
    decode_responses=True,
    socket_connect_timeout=int(os.getenv("REDIS_CONNECT_TIMEOUT", 5)),
    health_check_interval=30,
)
