from __future__ import annotations

import pytest

from wellness_agent.errors import ConcurrentUpdateError
from wellness_agent.models import ChatMessage, ConversationContext, ConversationState
from wellness_agent.session_store import ConversationStore


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _with_state(context: ConversationContext, state: ConversationState) -> ConversationContext:
    return context.model_copy(update={"state": state})


def test_unknown_customer_starts_at_greeting():
    context = ConversationStore().get("cust-1")
    assert context.state == ConversationState.GREETING
    assert context.revision == 0
    assert context.messages == []


def test_set_increments_revision_and_rejects_stale_writes():
    store = ConversationStore()
    first = store.get("cust-1")
    stored = store.set("cust-1", _with_state(first, ConversationState.HEALTH_INQUIRY), expected_revision=0)
    assert stored.revision == 1
    assert store.get("cust-1").state == ConversationState.HEALTH_INQUIRY

    with pytest.raises(ConcurrentUpdateError) as excinfo:
        store.set("cust-1", _with_state(first, ConversationState.GENERAL_SUPPORT), expected_revision=0)
    assert excinfo.value.actual == 1
    assert store.get("cust-1").state == ConversationState.HEALTH_INQUIRY


def test_entries_expire_after_ttl():
    clock = FakeClock()
    store = ConversationStore(ttl_sec=60, clock=clock)
    store.set("cust-1", _with_state(store.get("cust-1"), ConversationState.HEALTH_INQUIRY))

    clock.now += 59
    assert store.get("cust-1").revision == 1
    clock.now += 2
    assert store.get("cust-1").revision == 0


def test_zero_ttl_never_expires():
    clock = FakeClock()
    store = ConversationStore(clock=clock)
    store.set("cust-1", store.get("cust-1"), ttl=0)
    clock.now += 10**9
    assert store.get("cust-1").revision == 1


def test_history_is_trimmed_to_limit():
    store = ConversationStore(history_limit=4)
    messages = [ChatMessage(role="user", content=f"pesan {index}") for index in range(6)]
    stored = store.set("cust-1", store.get("cust-1").model_copy(update={"messages": messages}))
    assert [message.content for message in stored.messages] == ["pesan 2", "pesan 3", "pesan 4", "pesan 5"]


def test_conversations_survive_restart(tmp_path):
    path = tmp_path / "conversations.json"
    store = ConversationStore(path)
    context = store.get("cust-1").model_copy(
        update={
            "state": ConversationState.ORDER_COLLECTION,
            "messages": [ChatMessage(role="user", content="mau pesan")],
            "metadata": {"mentioned_products": ["mganik-superfood"]},
        }
    )
    store.set("cust-1", context)

    reloaded = ConversationStore(path).get("cust-1")
    assert reloaded.state == ConversationState.ORDER_COLLECTION
    assert reloaded.metadata == {"mentioned_products": ["mganik-superfood"]}
    assert reloaded.messages[0].content == "mau pesan"
    assert reloaded.revision == 1


def test_expired_entries_are_not_loaded(tmp_path):
    path = tmp_path / "conversations.json"
    clock = FakeClock()
    store = ConversationStore(path, ttl_sec=10, clock=clock)
    store.set("cust-1", store.get("cust-1"))

    clock.now += 11
    assert ConversationStore(path, ttl_sec=10, clock=clock).get("cust-1").revision == 0


def test_corrupt_file_is_ignored(tmp_path):
    path = tmp_path / "conversations.json"
    path.write_text("not json", encoding="utf-8")
    assert ConversationStore(path).get("cust-1").revision == 0


def test_reset_and_lock():
    store = ConversationStore()
    store.set("cust-1", store.get("cust-1"))

    assert store.reset("cust-1") is True
    assert store.reset("cust-1") is False
    assert store.get("cust-1").revision == 0
    assert store.lock("cust-1") is store.lock("cust-1")
    assert store.lock("cust-1") is not store.lock("cust-2")


def test_reset_and_expiry_release_idle_customer_locks():
    clock = FakeClock()
    store = ConversationStore(ttl_sec=60, clock=clock)
    store.set("cust-1", store.get("cust-1"))
    first = store.lock("cust-1")

    store.reset("cust-1")
    second = store.lock("cust-1")
    assert second is not first

    store.set("cust-1", store.get("cust-1"))
    clock.now += 61
    store.get("cust-1")
    assert store.lock("cust-1") is not second


def test_lock_held_by_a_running_turn_survives_reset():
    store = ConversationStore()
    store.set("cust-1", store.get("cust-1"))
    held = store.lock("cust-1")

    with held:
        store.reset("cust-1")
        assert store.lock("cust-1") is held
