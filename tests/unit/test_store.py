"""Unit tests for the SQLite chat store."""

from dataclasses import replace

import pytest

from comfychat.core.exceptions import ConfigurationMissing
from comfychat.core.models import ConversationEntry, EntryStatus, Role, SeedStrategy, Settings
from comfychat.core.store import UNKNOWN_PROMPT, ChatStore


def user(text: str) -> ConversationEntry:
    return ConversationEntry(role=Role.USER, content=text)


def image(blob: bytes | None = b"img", url: str | None = "http://h/view?f=1") -> ConversationEntry:
    return ConversationEntry(role=Role.ASSISTANT, image_blob=blob, image_url=url)


class TestInitialization:
    """Test database initialization."""

    def test_creates_database_file(self, temp_dir):
        db_path = temp_dir / "nested" / "chat.db"
        ChatStore(db_path)
        assert db_path.exists()

    def test_empty_store(self, store):
        assert store.list_messages() == []
        assert store.list_favorites() == []
        assert store.read_settings() is None

    def test_data_survives_reopen(self, store, workflow_settings):
        store.add_message(user("persisted"))
        store.upsert_settings(workflow_settings)

        reopened = ChatStore(store.db_path)
        assert [e.content for e in reopened.list_messages()] == ["persisted"]
        assert reopened.read_settings() == workflow_settings


class TestMessages:
    """Tests for conversation entries."""

    def test_add_assigns_id_and_timestamp(self, store):
        stored = store.add_message(user("a cat"))
        assert stored.id is not None
        assert stored.timestamp > 0
        assert store.get_message(stored.id) == stored

    def test_blob_round_trips(self, store, png_bytes):
        stored = store.add_message(image(blob=png_bytes))
        fetched = store.get_message(stored.id)
        assert fetched.image_blob == png_bytes
        assert fetched.role is Role.ASSISTANT
        assert fetched.status is EntryStatus.COMPLETE

    def test_get_missing_returns_none(self, store):
        assert store.get_message(999) is None

    def test_has_image_tracks_stored_blob(self, store, png_bytes):
        assert store.add_message(image(blob=png_bytes)).has_image
        # A failed download keeps its url but has no bytes.
        failed = store.add_message(
            ConversationEntry(
                role=Role.ASSISTANT,
                status=EntryStatus.ERROR,
                image_url="http://h/view?filename=x.png",
            )
        )
        assert not store.get_message(failed.id).has_image
        assert not store.add_message(user("a cat")).has_image

    def test_listed_in_insertion_order(self, store):
        for text in ["one", "two", "three"]:
            store.add_message(user(text))
        assert [e.content for e in store.list_messages()] == ["one", "two", "three"]

    def test_timestamps_strictly_increase_with_frozen_clock(self, temp_dir):
        frozen = ChatStore(temp_dir / "frozen.db", clock=lambda: 1000.0)
        stamps = [frozen.add_message(user(str(i))).timestamp for i in range(5)]
        assert stamps == sorted(set(stamps))
        assert stamps[0] == 1_000_000

    def test_timestamps_increase_when_clock_goes_back(self, temp_dir):
        times = iter([2000.0, 1000.0])
        store = ChatStore(temp_dir / "skew.db", clock=lambda: next(times))
        first = store.add_message(user("first"))
        second = store.add_message(user("second"))
        assert second.timestamp > first.timestamp

    def test_timestamps_continue_after_reopen(self, temp_dir):
        db_path = temp_dir / "reopen.db"
        first = ChatStore(db_path, clock=lambda: 5000.0).add_message(user("a"))
        second = ChatStore(db_path, clock=lambda: 1.0).add_message(user("b"))
        assert second.timestamp > first.timestamp

    def test_list_window(self, temp_dir):
        times = iter([1.0, 2.0, 3.0, 4.0])
        store = ChatStore(temp_dir / "window.db", clock=lambda: next(times))
        for text in "abcd":
            store.add_message(user(text))
        window = store.list_messages(since=2000, until=3000)
        assert [e.content for e in window] == ["b", "c"]

    def test_clear_messages(self, store):
        store.add_message(user("a"))
        store.add_message(user("b"))
        assert store.clear_messages() == 2
        assert store.list_messages() == []

    def test_find_originating_prompt(self, store):
        store.add_message(user("first"))
        store.add_message(user("second"))
        result = store.add_message(image())
        assert store.find_originating_prompt(result.id) == "second"

    def test_find_originating_prompt_without_user(self, store):
        result = store.add_message(image())
        assert store.find_originating_prompt(result.id) is None


class TestFavorites:
    """Tests for favorites."""

    def test_favorite_copies_prompt_and_blob(self, store, png_bytes):
        store.add_message(user("a cat"))
        result = store.add_message(image(blob=png_bytes))

        favorite = store.favorite_message(result.id)

        assert favorite.prompt == "a cat"
        assert favorite.image_blob == png_bytes
        assert store.list_favorites() == [favorite]

    def test_favorite_without_user_entry(self, store):
        result = store.add_message(image())
        assert store.favorite_message(result.id).prompt == UNKNOWN_PROMPT

    def test_favorite_requires_blob(self, store):
        stored = store.add_message(image(blob=None))
        assert store.favorite_message(stored.id) is None
        assert store.favorite_message(12345) is None
        assert store.list_favorites() == []

    def test_favorites_survive_clear(self, store):
        store.add_message(user("a cat"))
        result = store.add_message(image())
        store.favorite_message(result.id)

        store.clear_messages()

        assert len(store.list_favorites()) == 1

    def test_listed_newest_first(self, store):
        older = store.add_favorite("old", b"1")
        newer = store.add_favorite("new", b"2")
        assert [f.id for f in store.list_favorites()] == [newer.id, older.id]

    def test_delete(self, store):
        favorite = store.add_favorite("p", b"1")
        assert store.delete_favorite(favorite.id) is True
        assert store.get_favorite(favorite.id) is None
        assert store.delete_favorite(favorite.id) is False


class TestSettings:
    """Tests for the singleton settings row."""

    def test_upsert_replaces(self, store, workflow_settings):
        store.upsert_settings(workflow_settings)
        store.upsert_settings(Settings(api_host="other:1", workflow_json="{}"))

        settings = store.read_settings()
        assert settings.api_host == "other:1"
        assert settings.auth_token == ""

    def test_update_merges_fields(self, configured_store, workflow_settings):
        updated = configured_store.update_settings(last_seed=42, seed_mode=SeedStrategy.INCREMENT)

        assert updated.last_seed == 42
        assert updated.seed_mode is SeedStrategy.INCREMENT
        assert updated.api_host == workflow_settings.api_host
        assert configured_store.read_settings() == updated

    def test_update_without_row_raises(self, store):
        with pytest.raises(ConfigurationMissing):
            store.update_settings(last_seed=1)
        assert store.read_settings() is None

    def test_update_rejects_unknown_field(self, configured_store):
        with pytest.raises(ValueError, match="bogus"):
            configured_store.update_settings(bogus=1)

    def test_update_with_sees_latest_value(self, configured_store):
        configured_store.update_settings(last_seed=10)
        updated = configured_store.update_settings_with(
            lambda s: replace(s, last_seed=s.last_seed + 1)
        )
        assert updated.last_seed == 11

    def test_failed_mutation_rolls_back(self, configured_store):
        def explode(_settings):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            configured_store.update_settings_with(explode)
        assert configured_store.update_settings(last_seed=3).last_seed == 3


class TestSubscriptions:
    """Tests for change notification."""

    def test_subscriber_notified_after_write(self, store):
        seen = []
        store.subscribe("messages", lambda table: seen.append(store.list_messages()))

        store.add_message(user("a cat"))

        assert len(seen) == 1
        assert seen[0][0].content == "a cat"

    def test_only_written_table_notified(self, store):
        seen = []
        store.subscribe("favorites", seen.append)
        store.add_message(user("a cat"))
        assert seen == []

    def test_unsubscribe(self, store):
        seen = []
        stop = store.subscribe("messages", seen.append)
        stop()
        store.add_message(user("a"))
        assert seen == []

    def test_unknown_table(self, store):
        with pytest.raises(ValueError):
            store.subscribe("nope", lambda t: None)

    def test_failing_subscriber_does_not_break_write(self, store):
        def broken(_table):
            raise RuntimeError("render failed")

        store.subscribe("messages", broken)
        stored = store.add_message(user("a"))
        assert store.get_message(stored.id) is not None

    def test_live_query(self, store):
        results = []
        stop = store.live_query(("messages",), ChatStore.list_messages, results.append)

        store.add_message(user("a"))
        stop()
        store.add_message(user("b"))

        assert [len(r) for r in results] == [0, 1]
