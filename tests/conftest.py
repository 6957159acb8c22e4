import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure before any imports that might initialize the runtime
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("IDENTITY_ISSUER_URL", "https://issuer.test/pool")
os.environ.setdefault("XAI_API_URL", "https://model.test/v1")
os.environ.setdefault("XAI_API_KEY", "test-model-key")
os.environ.setdefault("CORS_ALLOWED_ORIGINS", "https://app.example")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from carechat.service.runtime import reset_runtime_for_tests  # noqa: E402

CACHE_KEY = "k" * 32


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self.redis = redis
        self.ops = []

    def rpush(self, key, value):
        self.ops.append(("rpush", key, value))
        return self

    def expire(self, key, seconds):
        self.ops.append(("expire", key, seconds))
        return self

    async def execute(self):
        results = []
        for op, key, arg in self.ops:
            if op == "rpush":
                self.redis.lists.setdefault(key, []).append(arg)
                results.append(len(self.redis.lists[key]))
            else:
                self.redis.expirations[key] = arg
                results.append(True)
        return results


class FakeRedis:
    """Just enough of ``redis.asyncio.Redis`` for the session cache."""

    def __init__(self) -> None:
        self.lists = {}
        self.expirations = {}
        self.pings = 0
        self.closed = False

    async def ping(self):
        self.pings += 1
        return True

    async def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        size = len(items)
        begin = max(size + start, 0) if start < 0 else start
        stop = size + end if end < 0 else end
        return items[begin : stop + 1]

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def delete(self, key):
        return 1 if self.lists.pop(key, None) is not None else 0

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
