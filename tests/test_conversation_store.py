"""Unit tests for ConversationStore."""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

import pytest
from datetime import datetime, timedelta
from services.conversation_store import ConversationStore
from models.conversation import Turn, parse_history_line


class FakeClock:
    """Manually advanced clock."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class TestConversationStore:
    """Test suite for ConversationStore."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        """Create a ConversationStore with a controllable clock."""
        return ConversationStore(ttl_seconds=3600, clock=clock)

    def test_history_unknown_id_is_empty(self, store):
        """Test that unknown conversations have no history."""
        assert store.history("conv_missing") == ()
        assert store.rendered_history("conv_missing") == []
        assert "conv_missing" not in store

    def test_append_creates_conversation_lazily(self, store):
        """Test that the first append creates the conversation."""
        store.append("abc", "oi", is_user=True)

        assert "abc" in store
        assert store.history("abc") == (Turn("oi", True),)

    def test_append_pairs_preserves_order_and_labels(self, store):
        """Test that N user/AI pairs give 2N entries in append order."""
        for i in range(5):
            store.append("abc", f"pergunta {i}", is_user=True)
            store.append("abc", f"resposta {i}", is_user=False)

        history = store.history("abc")
        assert len(history) == 10
        for i in range(5):
            assert history[2 * i] == Turn(f"pergunta {i}", True)
            assert history[2 * i + 1] == Turn(f"resposta {i}", False)

    def test_rendered_history_labels(self, store):
        """Test '<Speaker>: <content>' rendering."""
        store.append("abc", "oi", is_user=True)
        store.append("abc", "olá!", is_user=False)

        assert store.rendered_history("abc") == ["Usuário: oi", "EVA: olá!"]

    def test_rendered_history_round_trip(self, store):
        """Test that rendered lines parse back into the original pairs."""
        turns = [("oi", True), ("olá!", False), ("Nota: regar 2x: manhã e tarde", True)]
        for content, is_user in turns:
            store.append("abc", content, is_user)

        parsed = [parse_history_line(line) for line in store.rendered_history("abc")]
        assert parsed == turns

    def test_parse_history_line_rejects_unknown_speaker(self):
        """Test that lines without a known label are rejected."""
        with pytest.raises(ValueError):
            parse_history_line("Sistema: olá")

    def test_history_is_a_snapshot(self, store):
        """Test that history() does not expose the internal list."""
        store.append("abc", "oi", is_user=True)
        snapshot = store.history("abc")
        store.append("abc", "olá!", is_user=False)

        assert len(snapshot) == 1
        assert len(store.history("abc")) == 2

    def test_conversations_are_isolated(self, store):
        """Test that turns are partitioned by conversation id."""
        store.append("abc", "oi", is_user=True)
        store.append("xyz", "bom dia", is_user=True)

        assert store.rendered_history("abc") == ["Usuário: oi"]
        assert store.rendered_history("xyz") == ["Usuário: bom dia"]

    def test_append_updates_last_updated(self, store, clock):
        """Test that appends refresh last_updated."""
        store.append("abc", "oi", is_user=True)
        first = store.last_updated("abc")

        clock.advance(60)
        store.append("abc", "olá!", is_user=False)

        assert store.last_updated("abc") == first + timedelta(seconds=60)

    def test_new_conversation_id_format_and_uniqueness(self, store):
        """Test that new IDs are prefixed and unique."""
        ids = {store.new_conversation_id() for _ in range(50)}

        assert len(ids) == 50
        assert all(conversation_id.startswith("conv_") for conversation_id in ids)

    def test_new_conversation_id_does_not_create_conversation(self, store):
        """Test that conversations only exist after their first append."""
        conversation_id = store.new_conversation_id()
        assert conversation_id not in store

    def test_evict_idle_removes_only_expired(self, store, clock):
        """Test TTL-based eviction of idle conversations."""
        store.append("old", "oi", is_user=True)
        clock.advance(3000)
        store.append("recent", "oi", is_user=True)
        clock.advance(1000)

        assert store.evict_idle() == 1
        assert "old" not in store
        assert "recent" in store

    def test_new_conversation_id_evicts_idle(self, store, clock):
        """Test that issuing a new ID triggers eviction."""
        store.append("old", "oi", is_user=True)
        clock.advance(3601)

        store.new_conversation_id()

        assert "old" not in store

    def test_zero_ttl_disables_eviction(self, clock):
        """Test that a TTL of 0 keeps conversations forever."""
        store = ConversationStore(ttl_seconds=0, clock=clock)
        store.append("abc", "oi", is_user=True)
        clock.advance(10 ** 9)

        assert store.evict_idle() == 0
        assert "abc" in store
