"""
Redis store for API service.
"""

import redis
import uuid
from typing import Optional
from shared.constants import REDIS_URL, SESSION_LOCK_TTL_SECONDS
from shared.exceptions import ExecutionInProgressError
from shared.utils import generate_lock_key

# Deletes the lock only if it still holds our token
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisStore:
    """Redis client wrapper for API service"""

    def __init__(self, redis_url: Optional[str] = None):
        self.client = redis.Redis.from_url(redis_url or REDIS_URL, decode_responses=False)

    def acquire_execution_lock(self, session_id: str, ttl_seconds: int = SESSION_LOCK_TTL_SECONDS) -> str:
        """Returns a release token; raises when another execution holds the session"""
        token = str(uuid.uuid4())
        if not self.client.set(generate_lock_key(session_id), token, nx=True, ex=ttl_seconds):
            raise ExecutionInProgressError(f"Session {session_id} already has an execution in progress")
        return token

    def release_execution_lock(self, session_id: str, token: str) -> bool:
        return bool(self.client.eval(RELEASE_LOCK_SCRIPT, 1, generate_lock_key(session_id), token))

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False
