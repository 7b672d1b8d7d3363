"""Token buckets in Redis and the in-process fallback."""

from fastapi.testclient import TestClient

from tokenward import app as app_module
from tokenward.service.runtime import check_rate_limit, get_runtime
from tokenward.storage.redis_cache import BucketState, RedisRateLimiter


class FakeScript:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def __call__(self, keys, args):
        self.calls.append((keys, args))
        return self.replies.pop(0)


class FakeRedis:
    """Stands in for redis.asyncio.Redis; replays canned script replies."""

    def __init__(self, *replies):
        self.script = FakeScript(replies)
        self.source = None
        self.closed = False

    def register_script(self, source):
        self.source = source
        return self.script

    async def aclose(self):
        self.closed = True


async def test_take_reports_bucket_state():
    client = FakeRedis([1, 4, 0], [0, 0, 12])
    limiter = RedisRateLimiter(client)

    first = await limiter.take("login:abc", 5, 60)
    second = await limiter.take("login:abc", 5, 60)

    assert first == BucketState(allowed=True, remaining=4, retry_after=0)
    assert second == BucketState(allowed=False, remaining=0, retry_after=12)
    keys, args = client.script.calls[0]
    assert keys == [limiter.bucket_key("login:abc")]
    assert args[1:] == [5, 60]
    assert "HMGET" in client.source

    await limiter.close()
    assert client.closed


def test_bucket_keys_hash_the_subject():
    limiter = RedisRateLimiter(FakeRedis())
    key = limiter.bucket_key("login:someone@example.com")

    assert key.startswith("tokenward:bucket:login:")
    assert "someone" not in key
    assert key == limiter.bucket_key("login:someone@example.com")
    assert key != limiter.bucket_key("register:someone@example.com")


async def test_runtime_prefers_redis_buckets():
    runtime = get_runtime()
    runtime.rate_limiter = RedisRateLimiter(FakeRedis([0, 0, 7]))

    result = await check_rate_limit(runtime, "login:x", 5, 60, return_remaining=True)

    assert result == (False, 0, 7)
    assert runtime._local_rate_limits == {}


async def test_in_process_bucket_without_redis():
    runtime = get_runtime()
    assert runtime.rate_limiter is None

    results = [await check_rate_limit(runtime, "verify:x", 2, 3600) for _ in range(3)]

    assert results == [True, True, False]
    assert await check_rate_limit(runtime, "verify:y", 2, 3600) is True


def test_redis_denial_becomes_429():
    runtime = get_runtime()
    runtime.rate_limiter = RedisRateLimiter(FakeRedis([0, 0, 30]))
    client = TestClient(app_module.app)

    response = client.post(
        "/v1/auth/login", json={"email": "a@example.com", "password": "whatever1"}
    )

    assert response.status_code == 429
    assert response.json()["error"]["code"] == "rate_limited"
    assert response.headers["Retry-After"] == "30"
