"""Test MemoryService orchestration."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.exceptions import ChatNotFoundError, ChatValidationError, StorageError
from src.memory.models import ChatStats, Message, MessageRole
from src.memory.scheduler import AnalysisPolicy, AnalysisScheduler
from src.memory.service import EXPORT_FORMAT, MemoryService

from tests.helpers import make_chat, make_message, make_summarizer


@pytest.fixture
def summarizer():
    return make_summarizer(title="Trip planning", summary="About a trip", tags={"travel"})


@pytest.fixture
def service(store, summarizer):
    return MemoryService(store, summarizer, analysis_in_background=False)


class TestConstruction:
    def test_defaults(self, store, summarizer) -> None:
        service = MemoryService(store, summarizer)
        assert service.get_current_chat_id() is None
        assert service.analysis_in_background is True
        assert service.store is store

    def test_instances_do_not_share_current_chat(self, store, summarizer) -> None:
        a = MemoryService(store, summarizer)
        b = MemoryService(store, summarizer)
        a._current_chat_id = "x"
        assert b.get_current_chat_id() is None

    def test_from_settings(self, store, summarizer) -> None:
        settings = MagicMock(
            analysis_min_messages=5,
            analysis_period=3,
            analysis_on_user_turn=True,
            analysis_in_background=False,
            key_terms_limit=15,
            min_term_length=3,
            summarizer_timeout_seconds=5.0,
            context_top_k=2,
            context_tag_weight=2,
            query_terms_limit=5,
            context_snippet_chars=280,
            context_max_tags=5,
            title_max_length=60,
            stats_top_tags=10,
        )
        service = MemoryService.from_settings(store, summarizer, settings)
        assert service.title_max_length == 60
        assert service.analysis_in_background is False
        assert service._retriever.top_k == 2
        assert service.title_timeout == 5.0


class TestChatLifecycle:
    @pytest.mark.asyncio
    async def test_create_new_chat_sets_current(self, service, summarizer) -> None:
        chat_id = await service.create_new_chat("Plan a trip to Lisbon")

        assert service.get_current_chat_id() == chat_id
        memory = await service.store.get(chat_id)
        assert memory.title == "Trip planning"
        assert memory.messages == []
        summarizer.generate_title.assert_called_once_with("Plan a trip to Lisbon")

    @pytest.mark.asyncio
    async def test_title_failure_falls_back_to_opening_words(self, service, summarizer) -> None:
        summarizer.generate_title = AsyncMock(side_effect=RuntimeError("offline"))

        chat_id = await service.create_new_chat("Plan a trip to Lisbon")

        assert (await service.store.get(chat_id)).title == "Plan a trip to Lisbon"

    @pytest.mark.asyncio
    async def test_load_chat_sets_current(self, service) -> None:
        await service.store.create(make_chat("c1"))

        memory = await service.load_chat("c1")

        assert memory.id == "c1"
        assert service.get_current_chat_id() == "c1"

    @pytest.mark.asyncio
    async def test_load_unknown_chat_keeps_pointer(self, service) -> None:
        chat_id = await service.create_new_chat("hello there")
        assert await service.load_chat("missing") is None
        assert service.get_current_chat_id() == chat_id

    @pytest.mark.asyncio
    async def test_delete_current_chat_clears_pointer(self, service) -> None:
        chat_id = await service.create_new_chat("first chat")

        await service.delete_chat(chat_id)

        assert service.get_current_chat_id() is None
        assert await service.store.get(chat_id) is None

    @pytest.mark.asyncio
    async def test_delete_other_chat_keeps_pointer(self, service) -> None:
        await service.store.create(make_chat("other"))
        chat_id = await service.create_new_chat("first chat")

        await service.delete_chat("other")

        assert service.get_current_chat_id() == chat_id

    @pytest.mark.asyncio
    async def test_delete_unknown_is_noop(self, service) -> None:
        await service.delete_chat("missing")

    @pytest.mark.asyncio
    async def test_get_all_chats(self, service) -> None:
        await service.store.create(make_chat("a", minutes=1))
        await service.store.create(make_chat("b", minutes=2))
        assert [c.id for c in await service.get_all_chats()] == ["b", "a"]


class TestRename:
    @pytest.mark.asyncio
    async def test_rename_trims(self, service) -> None:
        await service.store.create(make_chat("c1", title="Old"))

        assert await service.rename_chat("c1", "  New name  ") is True
        assert (await service.store.get("c1")).title == "New name"

    @pytest.mark.parametrize("title", ["", "   ", "x" * 101])
    @pytest.mark.asyncio
    async def test_rename_rejects_bad_titles(self, service, title) -> None:
        await service.store.create(make_chat("c1", title="Old"))

        with pytest.raises(ChatValidationError):
            await service.rename_chat("c1", title)
        assert (await service.store.get("c1")).title == "Old"

    @pytest.mark.asyncio
    async def test_rename_unknown_returns_false(self, service) -> None:
        assert await service.rename_chat("missing", "Title") is False

    @pytest.mark.asyncio
    async def test_title_is_never_recomputed_by_analysis(self, service, summarizer) -> None:
        await service.add_message(make_message("first question"))
        chat_id = service.get_current_chat_id()
        await service.rename_chat(chat_id, "Mine")

        for i in range(6):
            await service.add_message(make_message(f"follow up {i}"))

        assert (await service.store.get(chat_id)).title == "Mine"
        summarizer.generate_title.assert_called_once()


class TestAddMessage:
    @pytest.mark.asyncio
    async def test_auto_creates_chat_when_none_current(self, service, summarizer) -> None:
        stored = await service.add_message(make_message("How do I bake bread?"))

        chat_id = service.get_current_chat_id()
        assert chat_id is not None
        assert stored.chat_id == chat_id
        summarizer.generate_title.assert_called_once_with("How do I bake bread?")

    @pytest.mark.asyncio
    async def test_hung_title_generation_falls_back(self, store, summarizer) -> None:
        async def hang(text):
            await asyncio.sleep(3600)

        summarizer.generate_title = AsyncMock(side_effect=hang)
        service = MemoryService(
            store, summarizer, analysis_in_background=False, title_timeout=0.05
        )

        stored = await asyncio.wait_for(
            service.add_message(make_message("hello there friend")), 2.0
        )

        memory = await service.store.get(stored.chat_id)
        assert memory.title == "hello there friend"
        assert [m.content for m in memory.messages] == ["hello there friend"]

    @pytest.mark.asyncio
    async def test_concurrent_first_messages_share_one_chat(self, store, summarizer) -> None:
        async def slow_title(text):
            await asyncio.sleep(0.01)
            return "Shared"

        summarizer.generate_title = AsyncMock(side_effect=slow_title)
        service = MemoryService(store, summarizer, analysis_in_background=False)

        first, second = await asyncio.gather(
            service.add_message(make_message("one")),
            service.add_message(make_message("two")),
        )

        assert first.chat_id == second.chat_id == service.get_current_chat_id()
        chats = await service.get_all_chats()
        assert len(chats) == 1
        assert chats[0].message_count == 2
        summarizer.generate_title.assert_called_once()

    @pytest.mark.asyncio
    async def test_appends_in_order(self, service) -> None:
        sent = [make_message(f"m{i}", role) for i, role in
                enumerate([MessageRole.USER, MessageRole.ASSISTANT] * 4)]
        for msg in sent:
            await service.add_message(msg)

        messages = await service.get_messages(service.get_current_chat_id())
        assert [m.id for m in messages] == [m.id for m in sent]

    @pytest.mark.asyncio
    async def test_auto_creates_after_current_deleted(self, service) -> None:
        await service.add_message(make_message("first"))
        first_id = service.get_current_chat_id()
        await service.delete_chat(first_id)

        stored = await service.add_message(make_message("second"))

        new_id = service.get_current_chat_id()
        assert new_id is not None and new_id != first_id
        assert stored.chat_id == new_id

    @pytest.mark.asyncio
    async def test_recovers_when_current_chat_vanished_from_store(self, service) -> None:
        await service.add_message(make_message("first"))
        stale = service.get_current_chat_id()
        await service.store.delete(stale)

        stored = await service.add_message(make_message("second"))

        assert stored.chat_id != stale
        assert stored.chat_id == service.get_current_chat_id()

    @pytest.mark.asyncio
    async def test_analysis_follows_policy(self, store, summarizer) -> None:
        service = MemoryService(store, summarizer, analysis_in_background=False)
        for _ in range(9):
            await service.add_message(make_message("assistant text", MessageRole.ASSISTANT))

        # counts 1-6 and 9
        assert summarizer.generate_summary.await_count == 7

    @pytest.mark.asyncio
    async def test_analysis_updates_metadata(self, service) -> None:
        await service.add_message(make_message("sourdough starter hydration"))

        memory = await service.store.get(service.get_current_chat_id())
        assert memory.summary == "About a trip"
        assert memory.tags == ["travel"]
        assert memory.key_terms == ["sourdough", "starter", "hydration"]
        assert memory.analyzed_message_count == 1

    @pytest.mark.asyncio
    async def test_analysis_failure_does_not_fail_append(self, service, summarizer) -> None:
        summarizer.generate_summary = AsyncMock(side_effect=RuntimeError("quota"))
        summarizer.generate_tags = AsyncMock(side_effect=RuntimeError("quota"))

        stored = await service.add_message(make_message("still saved"))

        assert [m.id for m in await service.get_messages(stored.chat_id)] == [stored.id]

    @pytest.mark.asyncio
    async def test_crashing_scheduler_does_not_fail_append(self, store, summarizer) -> None:
        scheduler = AnalysisScheduler(store, summarizer)
        scheduler.analyze = AsyncMock(side_effect=RuntimeError("bug"))
        service = MemoryService(
            store, summarizer, scheduler=scheduler, analysis_in_background=False
        )

        stored = await service.add_message(make_message("kept"))

        assert stored.chat_id == service.get_current_chat_id()

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self, service) -> None:
        await service.add_message(make_message("first"))
        service.store.append_message = AsyncMock(side_effect=StorageError("disk full"))

        with pytest.raises(StorageError):
            await service.add_message(make_message("second"))

    @pytest.mark.asyncio
    async def test_save_message_alias(self, service) -> None:
        stored = await service.save_message(make_message("alias"))
        assert stored.chat_id == service.get_current_chat_id()

    @pytest.mark.asyncio
    async def test_image_only_first_message_gets_a_title(self, service, summarizer) -> None:
        summarizer.generate_title = AsyncMock(return_value="")
        message = Message(
            role=MessageRole.USER,
            content=[{"type": "image_url", "image_url": "file:///cat.png"}],
        )

        await service.add_message(message)

        memory = await service.store.get(service.get_current_chat_id())
        assert memory.title == "[Image]"


class TestBackgroundAnalysis:
    @pytest.mark.asyncio
    async def test_append_does_not_wait_for_analysis(self, store, summarizer) -> None:
        gate = asyncio.Event()

        async def slow_summary(messages):
            await gate.wait()
            return "done"

        summarizer.generate_summary = slow_summary
        service = MemoryService(store, summarizer)

        stored = await asyncio.wait_for(service.add_message(make_message("quick")), 1)
        assert len(await store.get_messages(stored.chat_id)) == 1
        assert (await store.get(stored.chat_id)).summary == ""

        gate.set()
        await service.wait_for_analysis()
        assert (await store.get(stored.chat_id)).summary == "done"

    @pytest.mark.asyncio
    async def test_passes_are_serialized_per_chat(self, store, summarizer) -> None:
        running = 0
        peak = 0

        async def summary(messages):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return f"{len(messages)} messages"

        summarizer.generate_summary = summary
        service = MemoryService(store, summarizer)

        for i in range(4):
            await service.add_message(make_message(f"user turn {i}"))
        await service.wait_for_analysis()

        assert peak == 1
        chat = await store.get(service.get_current_chat_id())
        assert chat.summary == "4 messages"
        assert chat.analyzed_message_count == 4

    @pytest.mark.asyncio
    async def test_delete_during_analysis_discards_result(self, store, summarizer) -> None:
        gate = asyncio.Event()

        async def slow_summary(messages):
            await gate.wait()
            return "late"

        summarizer.generate_summary = slow_summary
        service = MemoryService(store, summarizer)
        stored = await service.add_message(make_message("soon gone"))
        await asyncio.sleep(0)

        await service.delete_chat(stored.chat_id)
        gate.set()
        await service.wait_for_analysis()

        assert await store.get(stored.chat_id) is None
        assert await store.get_all() == []

    @pytest.mark.asyncio
    async def test_close_waits_for_pending(self, store, summarizer) -> None:
        service = MemoryService(store, summarizer)
        stored = await service.add_message(make_message("closing"))

        await service.close()

        assert (await store.get(stored.chat_id)).summary == "About a trip"
        assert service._pending == {}


class TestContextAndSearch:
    @pytest.mark.asyncio
    async def test_find_relevant_context_without_current_chat(self, service) -> None:
        await service.store.create(make_chat("other", tags=["database"]))
        assert await service.find_relevant_context("database question") == []
        assert await service.find_relevant_snippets("database question") == []

    @pytest.mark.asyncio
    async def test_find_relevant_context_excludes_current(self, service) -> None:
        await service.store.create(make_chat("other", title="Other", tags=["database"]))
        chat_id = await service.create_new_chat("database question")
        await service.store.apply_analysis(
            chat_id, summary="", tags=["database"], key_terms=["database"],
            analyzed_message_count=0,
        )

        context = await service.find_relevant_context("database indexes")
        snippets = await service.find_relevant_snippets("database indexes")

        assert len(context) == 1
        assert context[0].startswith('Previous conversation "Other"')
        assert [s.chat_id for s in snippets] == ["other"]

    @pytest.mark.asyncio
    async def test_only_conversation_returns_empty(self, service) -> None:
        await service.add_message(make_message("database question"))
        assert await service.find_relevant_context("database question") == []

    @pytest.mark.asyncio
    async def test_search_chats_ranks_matching_first(self, service) -> None:
        await service.store.create(make_chat("db", tags=["database", "sql"]))
        await service.store.create(make_chat("food", tags=["cooking"]))

        results = await service.search_chats("database migration")

        assert [c.id for c in results] == ["db"]

    @pytest.mark.asyncio
    async def test_search_uses_top_query_terms(self, store, summarizer) -> None:
        service = MemoryService(store, summarizer, query_terms_limit=1)
        await store.create(make_chat("c1", tags=["second"]))

        assert await service.search_chats("first first second") == []


class TestImportExport:
    async def _chat_with_messages(self, service):
        await service.add_message(make_message("How do I tune postgres?"))
        await service.add_message(
            make_message("Adjust autovacuum.", MessageRole.ASSISTANT, model="gpt-4o")
        )
        return service.get_current_chat_id()

    @pytest.mark.asyncio
    async def test_export_format(self, service) -> None:
        chat_id = await self._chat_with_messages(service)

        data = json.loads(await service.export_chat(chat_id))

        assert data["format"] == EXPORT_FORMAT
        assert data["version"] == 1
        assert data["chat"]["id"] == chat_id
        assert [m["content"] for m in data["chat"]["messages"]] == [
            "How do I tune postgres?",
            "Adjust autovacuum.",
        ]

    @pytest.mark.asyncio
    async def test_export_unknown_raises(self, service) -> None:
        with pytest.raises(ChatNotFoundError):
            await service.export_chat("missing")

    @pytest.mark.asyncio
    async def test_round_trip_mints_new_identity(self, service) -> None:
        chat_id = await self._chat_with_messages(service)
        original = await service.store.get(chat_id)

        new_id = await service.import_chat(await service.export_chat(chat_id))

        imported = await service.store.get(new_id)
        assert new_id != chat_id
        assert [m.content for m in imported.messages] == [
            m.content for m in original.messages
        ]
        assert [m.role for m in imported.messages] == [m.role for m in original.messages]
        assert all(m.chat_id == new_id for m in imported.messages)
        assert not {m.id for m in imported.messages} & {m.id for m in original.messages}
        assert imported.created_at >= original.created_at
        assert imported.last_message_at >= original.last_message_at
        assert imported.message_count == 2
        assert imported.title == original.title
        # Original untouched
        assert len(await service.store.get_messages(chat_id)) == 2

    @pytest.mark.asyncio
    async def test_import_accepts_bare_chat_object(self, service) -> None:
        data = json.dumps(
            {
                "id": "foreign",
                "title": "Imported",
                "messages": [{"role": "user", "content": "hi from elsewhere"}],
                "tags": ["import"],
            }
        )

        new_id = await service.import_chat(data)

        memory = await service.store.get(new_id)
        assert new_id != "foreign"
        assert memory.tags == ["import"]
        assert memory.messages[0].content == "hi from elsewhere"

    @pytest.mark.asyncio
    async def test_imported_chat_is_searchable(self, service) -> None:
        await service.search_chats("warm the index")
        data = json.dumps({"title": "Imported", "tags": ["graphql"]})

        new_id = await service.import_chat(data)

        assert [c.id for c in await service.search_chats("graphql")] == [new_id]

    @pytest.mark.parametrize(
        "payload",
        [
            "not json",
            "[1, 2, 3]",
            '"a string"',
            json.dumps({"messages": []}),
            json.dumps({"title": "x", "messages": [{"content": "no role"}]}),
            json.dumps({"format": "something-else", "chat": {"title": "x"}}),
            json.dumps({"format": "chat-memory", "version": 1}),
            json.dumps({"title": "   "}),
        ],
    )
    @pytest.mark.asyncio
    async def test_import_rejects_malformed_data(self, service, kv, payload) -> None:
        with pytest.raises(ChatValidationError):
            await service.import_chat(payload)
        assert len(kv) == 0

    @pytest.mark.asyncio
    async def test_import_does_not_change_current_chat(self, service) -> None:
        chat_id = await self._chat_with_messages(service)
        await service.import_chat(await service.export_chat(chat_id))
        assert service.get_current_chat_id() == chat_id


class TestStatsAndBio:
    @pytest.mark.asyncio
    async def test_stats(self, service, store) -> None:
        await store.create(make_chat("a", tags=["python", "sql"]))
        await store.create(make_chat("b", tags=["python"]))
        await store.create(make_chat("c", tags=["cooking", "python", "sql"]))
        for _ in range(3):
            await store.append_message("a", make_message())
        await store.append_message("c", make_message())

        stats = await service.get_chat_stats()

        assert isinstance(stats, ChatStats)
        assert stats.total_chats == 3
        assert stats.total_messages == 4
        assert stats.most_used_tags[:2] == ["python", "sql"]
        assert set(stats.most_used_tags) == {"python", "sql", "cooking"}

    @pytest.mark.asyncio
    async def test_stats_caps_tag_list(self, store, summarizer) -> None:
        service = MemoryService(store, summarizer, stats_top_tags=10)
        await store.create(make_chat("a", tags=[f"t{i}" for i in range(15)]))

        assert len((await service.get_chat_stats()).most_used_tags) == 10

    @pytest.mark.asyncio
    async def test_stats_empty(self, service) -> None:
        assert await service.get_chat_stats() == ChatStats()

    @pytest.mark.asyncio
    async def test_bio_save_keeps_identity(self, service) -> None:
        assert await service.get_bio() is None

        first = await service.save_bio("Helper", "Be terse.")
        second = await service.save_bio("Helper v2", "Be verbose.")

        assert second.id == first.id
        assert second.created_at == first.created_at
        assert second.updated_at >= first.updated_at
        bio = await service.get_bio()
        assert bio.name == "Helper v2"
        assert bio.content == "Be verbose."


@pytest.mark.asyncio
async def test_initialize_warms_index(store, summarizer) -> None:
    await store.create(make_chat("c1", tags=["rust"]))
    service = MemoryService(store, summarizer)

    await service.initialize()

    assert [c.id for c in await service.search_chats("rust")] == ["c1"]
