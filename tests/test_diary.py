"""
DiaryService.handle_incoming_diary in tiered and deferred modes.
"""
import pytest

from diarybot.core import messages
from diarybot.core.container import build_container
from diarybot.core.errors import DiaryInputError, LLMError
from diarybot.models.analysis import LEVEL_ENRICHMENT
from diarybot.services.tiered_analysis import LEVEL_1, LEVEL_2

DIARY = "今日は楽しかった、友達と映画を見た"


class Deferred:
    """Collects work the way BackgroundTasks.add_task does, runs it on demand."""

    def __init__(self):
        self.tasks = []

    def __call__(self, func, *args):
        self.tasks.append((func, args))

    async def run_all(self):
        return [await func(*args) for func, args in self.tasks]


@pytest.fixture()
def deferred_container(test_settings, store, llm, messaging, resilience):
    settings = test_settings.model_copy(update={"ANALYSIS_MODE": "deferred"})
    return build_container(settings, store=store, llm=llm, messaging=messaging, resilience=resilience)


class TestTieredMode:
    @pytest.mark.asyncio
    async def test_level_1_needs_no_enrichment(self, container, llm):
        defer = Deferred()
        reply = await container.diary.handle_incoming_diary("U1", DIARY, defer=defer)

        assert reply.level == LEVEL_1
        assert reply.reply_text == llm.reply
        assert reply.enrichment_scheduled is False
        assert defer.tasks == []

    @pytest.mark.asyncio
    async def test_degraded_reply_schedules_enrichment(self, container, store, llm, messaging):
        llm.errors = [LLMError("unauthorized", status_code=401)]
        llm.reply = '{"emotion": "楽しさ", "themes": "友人", "patterns": "外出", "positive_points": "素敵です"}'
        defer = Deferred()

        reply = await container.diary.handle_incoming_diary("U1", DIARY, defer=defer)

        assert reply.level == LEVEL_2
        assert reply.enrichment_scheduled is True
        assert reply.reply_text.endswith(messages.ENRICHMENT_PENDING_NOTE)
        assert len(defer.tasks) == 1

        assert await defer.run_all() == [True]
        assert [a.level for a in store.analyses] == [LEVEL_2, LEVEL_ENRICHMENT]
        assert messaging.pushes[0][1][0].startswith(messages.ENRICHMENT_DONE_HEADER)

    @pytest.mark.asyncio
    async def test_degraded_reply_without_registrar(self, container, llm):
        llm.errors = [LLMError("unauthorized", status_code=401)]
        reply = await container.diary.handle_incoming_diary("U1", DIARY)

        assert reply.level == LEVEL_2
        assert reply.enrichment_scheduled is False
        assert messages.ENRICHMENT_PENDING_NOTE not in reply.reply_text

    @pytest.mark.asyncio
    async def test_enrichment_can_be_disabled(self, test_settings, store, llm, messaging, resilience):
        settings = test_settings.model_copy(update={"ENRICH_DEGRADED_RESULTS": False})
        container = build_container(settings, store=store, llm=llm, messaging=messaging, resilience=resilience)
        llm.errors = [LLMError("unauthorized", status_code=401)]
        defer = Deferred()

        reply = await container.diary.handle_incoming_diary("U1", DIARY, defer=defer)

        assert reply.level == LEVEL_2
        assert defer.tasks == []

    @pytest.mark.asyncio
    async def test_entry_is_stored_trimmed(self, container, store):
        await container.diary.handle_incoming_diary("U1", f"\n  {DIARY}  \n")
        assert store.entries[0].content == DIARY


class TestDeferredMode:
    @pytest.mark.asyncio
    async def test_immediate_pending_reply(self, deferred_container, store, llm, messaging):
        llm.reply = '{"emotion": "楽しさ", "themes": "友人", "patterns": "外出", "positive_points": "素敵です"}'
        defer = Deferred()

        reply = await deferred_container.diary.handle_incoming_diary("U1", DIARY, defer=defer)

        assert reply.reply_text == messages.ANALYSIS_PENDING
        assert reply.level is None
        assert len(store.entries) == 1
        assert store.analyses == []
        assert llm.calls == []
        assert len(deferred_container.monitor) == 0

        assert await defer.run_all() == [True]
        assert store.analyses[0].level == LEVEL_ENRICHMENT
        assert store.analyses[0].emotion == "楽しさ"
        assert messaging.pushes[0][0] == "U1"

    @pytest.mark.asyncio
    async def test_entry_is_stored_trimmed(self, deferred_container, store):
        await deferred_container.diary.handle_incoming_diary("U1", f"　{DIARY}\n", defer=Deferred())
        assert store.entries[0].content == DIARY

    @pytest.mark.asyncio
    async def test_without_registrar_falls_back_to_tiered(self, deferred_container, llm):
        reply = await deferred_container.diary.handle_incoming_diary("U1", DIARY)
        assert reply.level == LEVEL_1
        assert reply.reply_text == llm.reply

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, deferred_container, store):
        with pytest.raises(DiaryInputError):
            await deferred_container.diary.handle_incoming_diary("U1", "  ", defer=Deferred())
        assert store.entries == []
