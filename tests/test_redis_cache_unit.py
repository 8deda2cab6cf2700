import json

from shopauth.storage.models import Session
from shopauth.storage.redis_cache import RedisCache


class StubPipeline:
    def __init__(self, client):
        self.client = client
        self.ops = []

    def set(self, key, value, ex=None):
        self.ops.append(("set", key, value, ex))

    def sadd(self, key, member):
        self.ops.append(("sadd", key, member))

    def srem(self, key, member):
        self.ops.append(("srem", key, member))

    def expire(self, key, ttl, nx=False, gt=False):
        self.ops.append(("expire", key, ttl, "nx" if nx else "gt" if gt else None))
        current = self.client.ttls.get(key)
        if nx and current is not None:
            return
        if gt and (current is None or ttl <= current):
            return
        self.client.ttls[key] = ttl

    def delete(self, key):
        self.ops.append(("delete", key))

    async def execute(self):
        self.client.executed.append(self.ops)
        return [self.client.delete_result(op) for op in self.ops]


class StubRedis:
    def __init__(self):
        self.values = {}
        self.sets = {}
        self.ttls = {}
        self.executed = []
        self.calls = []

    def delete_result(self, op):
        if op[0] == "delete":
            return 1 if self.values.pop(op[1], None) is not None or self.sets.pop(op[1], None) else 0
        return True

    def pipeline(self):
        return StubPipeline(self)

    async def set(self, key, value, ex=None):
        self.calls.append(("set", key, value, ex))
        self.values[key] = value

    async def get(self, key):
        return self.values.get(key)

    async def getdel(self, key):
        return self.values.pop(key, None)

    async def exists(self, key):
        return int(key in self.values)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))


class StubScript:
    def __init__(self, result=None):
        self.result = result
        self.calls = []

    async def __call__(self, keys, args):
        self.calls.append((keys, args))
        return self.result


def _cache(client=None):
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://stub"
    cache.client = client or StubRedis()
    cache._token_bucket = StubScript([1, 4, 0])
    cache._user_blacklist = StubScript(1)
    return cache


async def test_blacklist_uses_ttl_and_skips_expired():
    cache = _cache()
    await cache.blacklist_token("jti", 120)
    await cache.blacklist_token("gone", 0)
    assert cache.client.calls == [("set", "blacklist:jti", "revoked", 120)]
    assert await cache.is_token_blacklisted("jti") is True
    assert await cache.is_token_blacklisted("gone") is False


async def test_user_blacklist_goes_through_script():
    cache = _cache()
    await cache.blacklist_user_tokens("acct", 1767614400.123, 900)
    [(keys, args)] = cache._user_blacklist.calls
    assert keys == ["user_blacklist:acct"]
    assert args == ["1767614400.123", 900]

    cache.client.values["user_blacklist:acct"] = "1767614400.123"
    assert await cache.get_user_tokens_revoked_at("acct") == 1767614400.123
    assert await cache.get_user_tokens_revoked_at("other") is None


async def test_save_session_indexes_by_account():
    cache = _cache()
    session = Session.new("acct", device_fingerprint="fp")
    await cache.save_session(session, 3600)
    [ops] = cache.client.executed
    assert ops[0][:2] == ("set", f"auth:session:{session.id}")
    assert json.loads(ops[0][2])["device_fingerprint"] == "fp"
    assert ops[0][3] == 3600
    assert ("sadd", "auth:user_sessions:acct", session.id) in ops
    assert ("expire", "auth:user_sessions:acct", 3600, "nx") in ops
    assert ("expire", "auth:user_sessions:acct", 3600, "gt") in ops
    assert cache.client.ttls["auth:user_sessions:acct"] == 3600


async def test_touching_older_session_never_shortens_index():
    cache = _cache()
    older = Session.new("acct")
    newer = Session.new("acct")
    await cache.save_session(older, 86400)
    await cache.save_session(newer, 86400)
    # The older session is touched with only an hour left
    await cache.save_session(older, 3600)
    assert cache.client.ttls["auth:user_sessions:acct"] == 86400


async def test_index_ttl_grows_with_longer_sessions():
    cache = _cache()
    await cache.save_session(Session.new("acct"), 600)
    await cache.save_session(Session.new("acct"), 7200)
    assert cache.client.ttls["auth:user_sessions:acct"] == 7200


async def test_get_session_decodes_json():
    cache = _cache()
    session = Session.new("acct")
    cache.client.values[f"auth:session:{session.id}"] = json.dumps(session.to_dict())
    loaded = await cache.get_session(session.id)
    assert loaded.id == session.id
    assert await cache.get_session("missing") is None


async def test_delete_user_sessions_counts_deleted():
    cache = _cache()
    cache.client.sets["auth:user_sessions:acct"] = {"s1", "s2"}
    cache.client.values["auth:session:s1"] = "{}"
    assert await cache.delete_user_sessions("acct") == 1
    assert await cache.delete_user_sessions("acct") == 0


async def test_rate_limit_hashes_key():
    cache = _cache()
    allowed, remaining, reset = await cache.check_rate_limit("login:a@x.com", 5, 60)
    assert (allowed, remaining, reset) == (True, 4, 0)
    [(keys, args)] = cache._token_bucket.calls
    assert keys[0].startswith("rate:")
    assert "a@x.com" not in keys[0]
    assert args[1:] == [5 / 60, 5, 1]


async def test_one_time_tokens_are_popped_atomically():
    cache = _cache()
    await cache.set_one_time_token("reset", "tok", "acct", 3600)
    assert await cache.pop_one_time_token("reset", "tok") == "acct"
    assert await cache.pop_one_time_token("reset", "tok") is None
