import pytest

from codebot.service.credentials import (
    CredentialCache,
    CredentialManager,
    CredentialResolver,
    validate_completion_key,
    validate_execution_key,
)
from codebot.service.errors import NotFoundError, ValidationError
from codebot.service.vault import CredentialVault
from codebot.storage.memory import MemoryStore
from codebot.storage.models import SetCredentials, Tier, User

GEMINI_KEY = "AIza" + "x" * 35
E2B_KEY = "e2b_" + "y" * 41


class RecordingLogger:
    def __init__(self):
        self.events = []

    def _record(self, level, event, **kw):
        self.events.append((level, event, kw))

    def warning(self, event, **kw):
        self._record("warning", event, **kw)

    def info(self, event, **kw):
        self._record("info", event, **kw)

    def error(self, event, **kw):
        self._record("error", event, **kw)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def vault():
    return CredentialVault("unit-test-key")


def _resolver(store, vault, cache=None, logger=None):
    return CredentialResolver(
        store,
        vault,
        cache or CredentialCache(1800),
        default_completion="default-gemini",
        default_execution="default-e2b",
        logger=logger,
    )


def test_key_format_validation():
    assert validate_completion_key(f"  {GEMINI_KEY} ") == GEMINI_KEY
    assert validate_execution_key(E2B_KEY) == E2B_KEY
    with pytest.raises(ValidationError):
        validate_completion_key("AIza-too-short")
    with pytest.raises(ValidationError):
        validate_completion_key("x" * 39)
    with pytest.raises(ValidationError):
        validate_execution_key("e2b_short")
    with pytest.raises(ValidationError):
        validate_execution_key("E2B_" + "y" * 41)


async def test_user_keys_win_over_defaults(store, vault):
    user = store.create_user(User.new("1"))
    store.update_user(user.id, SetCredentials(vault.encrypt("mine-g"), vault.encrypt("mine-e")))

    creds = await _resolver(store, vault).resolve(user)

    assert creds.completion == "mine-g"
    assert creds.execution == "mine-e"
    assert not creds.completion_is_default
    assert "mine" not in repr(creds)


async def test_missing_keys_fall_back_to_defaults(store, vault):
    user = store.create_user(User.new("2"))

    creds = await _resolver(store, vault).resolve(user)

    assert creds.completion == "default-gemini"
    assert creds.execution == "default-e2b"
    assert creds.completion_is_default and creds.execution_is_default


async def test_corrupt_ciphertext_falls_back_and_warns(store, vault):
    user = store.create_user(User.new("3"))
    good = vault.encrypt("mine-e")
    store.update_user(user.id, SetCredentials("00:11:22", good))
    logger = RecordingLogger()

    creds = await _resolver(store, vault, logger=logger).resolve(user)

    assert creds.completion == "default-gemini"
    assert creds.execution == "mine-e"
    warnings = [e for e in logger.events if e[0] == "warning"]
    assert warnings[0][1] == "credential_decrypt_failed"
    assert warnings[0][2]["kind"] == "completion"


async def test_cache_serves_until_invalidated(store, vault):
    user = store.create_user(User.new("4"))
    store.update_user(user.id, SetCredentials(vault.encrypt("old-g"), vault.encrypt("old-e")))
    cache = CredentialCache(1800)
    resolver = _resolver(store, vault, cache)

    assert (await resolver.resolve(user)).completion == "old-g"
    store.update_user(user.id, SetCredentials(vault.encrypt("new-g"), vault.encrypt("new-e")))
    assert (await resolver.resolve(user)).completion == "old-g"

    await cache.invalidate(user.id)
    assert (await resolver.resolve(user)).completion == "new-g"


async def test_cache_holds_only_ciphertext(store, vault):
    user = store.create_user(User.new("5"))
    store.update_user(user.id, SetCredentials(vault.encrypt("plain-g"), vault.encrypt("plain-e")))
    cache = CredentialCache(1800)

    await _resolver(store, vault, cache).resolve(user)

    blobs = await cache.get(user.id)
    assert blobs is not None
    assert all("plain" not in blob for blob in blobs)


async def test_cache_entries_expire():
    clock = FakeClock()
    cache = CredentialCache(60, clock=clock)
    assert await cache.put("u", ("a", "b"), generation=0)
    assert await cache.get("u") == ("a", "b")
    clock.now += 61
    assert await cache.get("u") is None


async def test_stale_fill_after_invalidate_is_refused():
    cache = CredentialCache(1800)
    generation = await cache.generation("u")
    await cache.invalidate("u")

    stored = await cache.put("u", ("stale", "stale"), generation=generation)

    assert stored is False
    assert await cache.get("u") is None


async def test_activate_upgrades_and_encrypts(store, vault, settings):
    manager = CredentialManager(store, vault, CredentialCache(1800), settings)

    user = await manager.activate("900", GEMINI_KEY, E2B_KEY, display_name="Lin")

    assert user.tier is Tier.BASIC
    assert user.message_quota == 500
    stored = store.get_user(user.id)
    assert GEMINI_KEY not in stored.encrypted_completion_credential
    assert vault.decrypt(stored.encrypted_completion_credential) == GEMINI_KEY
    assert vault.decrypt(stored.encrypted_execution_credential) == E2B_KEY
    assert manager.status("900").has_keys
    assert store.usage_logs[-1].operation_type == "api_keys_activated"


async def test_activate_rejects_bad_key_before_touching_store(store, vault, settings):
    manager = CredentialManager(store, vault, CredentialCache(1800), settings)

    with pytest.raises(ValidationError):
        await manager.activate("901", "bad", E2B_KEY)

    assert store.find_user_by_external_id("901") is None


async def test_revoke_clears_keys_and_invalidates_cache(store, vault, settings):
    cache = CredentialCache(1800)
    manager = CredentialManager(store, vault, cache, settings)
    resolver = _resolver(store, vault, cache)
    user = await manager.activate("902", GEMINI_KEY, E2B_KEY)
    assert (await resolver.resolve(user)).completion == GEMINI_KEY

    revoked = await manager.revoke("902")

    assert revoked.tier is Tier.FREE
    assert revoked.message_quota == 100
    assert not revoked.has_credentials
    creds = await resolver.resolve(revoked)
    assert creds.completion == "default-gemini"
    assert store.usage_logs[-1].operation_type == "api_keys_revoked"


class CountingStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.updates = []

    def update_user(self, user_id, update):
        self.updates.append(update)
        return super().update_user(user_id, update)


async def test_keys_and_tier_change_in_one_store_write(vault, settings):
    store = CountingStore()
    manager = CredentialManager(store, vault, CredentialCache(1800), settings)

    await manager.activate("903", GEMINI_KEY, E2B_KEY)
    assert len(store.updates) == 1
    assert store.updates[0].tier_change.tier is Tier.BASIC

    await manager.revoke("903")
    assert len(store.updates) == 2
    assert store.updates[1].tier_change.message_quota == 100


class FailingUpdateStore(MemoryStore):
    def update_user(self, user_id, update):
        raise RuntimeError("write failed")


async def test_failed_activation_leaves_no_half_upgrade(vault, settings):
    store = FailingUpdateStore()
    manager = CredentialManager(store, vault, CredentialCache(1800), settings)

    with pytest.raises(RuntimeError):
        await manager.activate("904", GEMINI_KEY, E2B_KEY)

    user = store.find_user_by_external_id("904")
    assert user.tier is Tier.FREE
    assert not user.has_credentials
    assert store.usage_logs[-1].operation_type == "api_keys_activation_failed"


async def test_revoke_unknown_user_logs_with_null_user(store, vault, settings):
    manager = CredentialManager(store, vault, CredentialCache(1800), settings)

    with pytest.raises(NotFoundError):
        await manager.revoke("nobody")

    entry = store.usage_logs[-1]
    assert entry.operation_type == "api_keys_revoke_failed"
    assert entry.user_id is None
    assert entry.success is False


def test_status_for_unknown_chat(store, vault, settings):
    status = CredentialManager(store, vault, CredentialCache(1800), settings).status("x")
    assert not status.registered
    assert status.tier is None
