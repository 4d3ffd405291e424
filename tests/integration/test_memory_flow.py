"""Integration test: chat memory end to end on SQLite."""

import pytest

from src.app import create_memory_service
from src.config.settings import Settings
from src.memory.models import MessageRole
from src.memory.summarizer import HeuristicSummarizer

from tests.helpers import make_message, make_summarizer


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'memory.db'}",
        summarizer_provider="heuristic",
        _env_file=None,
    )


@pytest.mark.asyncio
async def test_conversations_feed_each_other(settings):
    """Two chats on SQLite: the second finds the first as context."""
    async with create_memory_service(settings, setup_logging=False) as service:
        await service.add_message(make_message("How do I plan a postgres database migration?"))
        await service.add_message(
            make_message(
                "Take a backup, run the migration in a transaction, verify the database.",
                MessageRole.ASSISTANT,
            )
        )
        await service.wait_for_analysis()
        first_id = service.get_current_chat_id()

        second_id = await service.create_new_chat("Sourdough bread")
        await service.add_message(make_message("Any tips for sourdough bread hydration?"))
        await service.wait_for_analysis()

        context = await service.find_relevant_context("Rolling back a database migration")
        assert len(context) == 1
        assert context[0].startswith("Previous conversation")
        assert "database" in context[0].lower()

        results = await service.search_chats("database migration")
        assert [c.id for c in results][0] == first_id
        assert second_id not in [c.id for c in results]


@pytest.mark.asyncio
async def test_state_survives_restart(settings):
    summarizer = make_summarizer(title="Kafka lag", summary="Consumer lag debugging", tags={"kafka"})

    async with create_memory_service(settings, summarizer, setup_logging=False) as service:
        await service.add_message(make_message("kafka consumer lag keeps growing"))
        await service.wait_for_analysis()
        chat_id = service.get_current_chat_id()
        exported = await service.export_chat(chat_id)
        await service.save_bio("Ops helper", "Knows Kafka.")

    async with create_memory_service(settings, HeuristicSummarizer(), setup_logging=False) as service:
        assert service.get_current_chat_id() is None

        memory = await service.load_chat(chat_id)
        assert memory.title == "Kafka lag"
        assert memory.summary == "Consumer lag debugging"
        assert memory.tags == ["kafka"]
        assert [m.content for m in memory.messages] == ["kafka consumer lag keeps growing"]
        assert (await service.get_bio()).name == "Ops helper"

        copy_id = await service.import_chat(exported)
        stats = await service.get_chat_stats()
        assert copy_id != chat_id
        assert stats.total_chats == 2
        assert stats.total_messages == 2
        assert stats.most_used_tags == ["kafka"]

        await service.delete_chat(chat_id)
        assert service.get_current_chat_id() is None
        stored = await service.add_message(make_message("fresh start"))
        assert stored.chat_id not in (chat_id, copy_id)
