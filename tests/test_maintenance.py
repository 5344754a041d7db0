import asyncio
from datetime import timedelta

from codebot.service.maintenance import MaintenanceService
from codebot.storage.models import MessageRole, UsageLog, User, utcnow


def _seed(store):
    now = utcnow()
    expired = User.new("1")
    expired.message_count = 40
    expired.quota_reset_date = now - timedelta(days=1)
    current = User.new("2")
    current.message_count = 5
    store.create_user(expired)
    store.create_user(current)

    conv = store.find_or_create_conversation(expired.id, "telegram_1")
    old = store.append_message(conv.id, MessageRole.USER, "old")
    store.messages[conv.id][0].created_at = now - timedelta(days=45)
    store.append_message(conv.id, MessageRole.USER, "new")

    store.log_usage(UsageLog("completion_request", True, user_id=expired.id, created_at=now - timedelta(days=120)))
    store.log_usage(UsageLog("completion_request", True, user_id=expired.id))
    return expired, current, conv, old


def test_sweep_resets_deletes_and_prunes(store, settings):
    expired, current, conv, _ = _seed(store)

    report = MaintenanceService(store, settings).run_once()

    assert report.quotas_reset == 1
    assert report.messages_deleted == 1
    assert report.usage_logs_pruned == 1
    assert store.get_user(expired.id).message_count == 0
    assert store.get_user(expired.id).quota_reset_date > utcnow()
    assert store.get_user(current.id).message_count == 5
    assert [m.content for m in store.recent_messages(conv.id)] == ["new"]
    assert len(store.usage_logs) == 1


def test_second_sweep_is_a_no_op(store, settings):
    _seed(store)
    service = MaintenanceService(store, settings)
    service.run_once()

    report = service.run_once()

    assert (report.quotas_reset, report.messages_deleted, report.usage_logs_pruned) == (0, 0, 0)


async def test_start_runs_a_sweep_and_stop_cancels(store, settings):
    expired, _, _, _ = _seed(store)
    service = MaintenanceService(store, settings)

    await service.start()
    for _ in range(50):
        if store.get_user(expired.id).message_count == 0:
            break
        await asyncio.sleep(0.01)
    await service.stop()

    assert store.get_user(expired.id).message_count == 0
    assert service._task is None
