"""Tests for resume_intake.search."""

from __future__ import annotations

from datetime import timedelta

import pytest

from resume_intake.models import MailFolder, RunMode
from resume_intake.search import (
    SearchOrchestrator,
    folder_priority,
    is_skipped_folder,
    resolve_mode,
    subject_matches,
)

from tests.conftest import MAILBOX, NOW, FakeEmailProvider, make_message


def _days_ago(days: float):
    return NOW - timedelta(days=days)


class TestHelpers:
    def test_subject_tokens_are_anded(self):
        assert subject_matches("Application: Senior Python Engineer", "engineer senior")
        assert not subject_matches("Application: Senior Analyst", "senior engineer")

    def test_empty_query_matches_everything(self):
        assert subject_matches("anything", None)
        assert subject_matches("anything", "")

    def test_sent_items_is_skipped(self):
        assert is_skipped_folder(MailFolder(id="s", display_name="Sent Items"))
        assert is_skipped_folder(MailFolder(id="s", display_name="Gesendet", well_known_name="sentitems"))
        assert not is_skipped_folder(MailFolder(id="s", display_name="Sent to agencies"))

    def test_folder_priority(self):
        assert folder_priority(MailFolder(id="1", display_name="Inbox")) == 0
        assert folder_priority(MailFolder(id="2", display_name="Sent to agencies")) == 1
        assert folder_priority(MailFolder(id="3", display_name="Deleted Items")) == 2
        assert folder_priority(MailFolder(id="4", display_name="Archive")) == 3
        assert folder_priority(MailFolder(id="5", display_name="Consent forms")) == 3

    def test_resolve_mode(self):
        assert resolve_mode("engineer", None) is RunMode.GRAPH_SEARCH
        assert resolve_mode(None, None) is RunMode.DEEP_SCAN
        assert resolve_mode("  ", RunMode.GRAPH_SEARCH) is RunMode.DEEP_SCAN
        assert resolve_mode("engineer", RunMode.DEEP_SCAN) is RunMode.DEEP_SCAN


class TestGraphSearch:
    @pytest.mark.asyncio
    async def test_filters_locally_and_sorts_newest_first(self, provider: FakeEmailProvider, search):
        provider.add_message(make_message("old", received_at=_days_ago(40)))
        provider.add_message(make_message("mid", received_at=_days_ago(5)))
        provider.add_message(make_message("new", received_at=_days_ago(1)))
        provider.add_message(make_message("analyst", subject="Application: Analyst", received_at=_days_ago(2)))
        provider.add_message(make_message("bare", received_at=_days_ago(1), has_attachments=False))

        result = await search.search_messages(MAILBOX, "engineer", lookback_days=30, now=NOW)

        assert result.mode_used is RunMode.GRAPH_SEARCH
        assert [m.external_id for m in result.messages] == ["new", "mid"]
        assert not result.truncated

    @pytest.mark.asyncio
    async def test_result_cap(self, provider: FakeEmailProvider, search):
        for i in range(5):
            provider.add_message(make_message(f"m{i}", received_at=_days_ago(i + 1)))

        result = await search.search_messages(MAILBOX, "engineer", limit=3, lookback_days=30, now=NOW)

        assert [m.external_id for m in result.messages] == ["m0", "m1", "m2"]
        assert result.truncated

    @pytest.mark.asyncio
    async def test_page_ceiling(self, provider: FakeEmailProvider, import_config):
        provider.page_size = 1
        for i in range(8):
            provider.add_message(make_message(f"m{i}", received_at=_days_ago(1)))
        search = SearchOrchestrator(provider, import_config.model_copy(update={"max_search_pages": 3}))

        result = await search.search_messages(MAILBOX, "engineer", lookback_days=30, now=NOW)

        assert result.pages_fetched == 3
        assert result.truncated
        assert len(result.messages) == 3

    @pytest.mark.asyncio
    async def test_relaxes_inefficient_filter_once(self, provider: FakeEmailProvider, search):
        provider.reject_restrictive_filter = True
        provider.add_message(make_message("with", received_at=_days_ago(1)))
        provider.add_message(make_message("without", received_at=_days_ago(1), has_attachments=False))

        result = await search.search_messages(MAILBOX, "engineer", lookback_days=30, now=NOW)

        assert provider.search_filters == [True, False]
        assert result.relaxed_filter
        assert [m.external_id for m in result.messages] == ["with"]

    @pytest.mark.asyncio
    async def test_duplicate_ids_collapse(self, provider: FakeEmailProvider, search):
        message = make_message("dup", received_at=_days_ago(1))
        provider.search_results = [message, message]

        result = await search.search_messages(MAILBOX, "engineer", lookback_days=30, now=NOW)

        assert [m.external_id for m in result.messages] == ["dup"]

    @pytest.mark.asyncio
    async def test_stop_before_first_page(self, provider: FakeEmailProvider, search):
        provider.add_message(make_message("m1", received_at=_days_ago(1)))

        async def _stop() -> bool:
            return True

        result = await search.search_messages(MAILBOX, "engineer", now=NOW, should_stop=_stop)

        assert result.stopped_early
        assert provider.calls["search_messages"] == 0


class TestDeepScan:
    @pytest.mark.asyncio
    async def test_folder_priority_and_sent_items_skipped(self, provider: FakeEmailProvider, search):
        provider.add_folder("archive", "Archive")
        provider.add_folder("inbox", "Inbox")
        provider.add_folder("sent", "Sent Items")
        provider.add_message(make_message("in-archive", folder_id="archive", received_at=_days_ago(1)))
        provider.add_message(make_message("in-inbox", folder_id="inbox", received_at=_days_ago(3)))
        provider.add_message(make_message("in-sent", folder_id="sent", received_at=_days_ago(1)))

        result = await search.search_messages(MAILBOX, None, lookback_days=30, now=NOW)

        assert result.mode_used is RunMode.DEEP_SCAN
        assert [m.external_id for m in result.messages] == ["in-inbox", "in-archive"]

    @pytest.mark.asyncio
    async def test_sent_items_subtree_is_skipped(self, provider: FakeEmailProvider, search):
        provider.add_folder("inbox", "Inbox")
        provider.add_folder("sent", "Sent Items")
        provider.add_folder("sent-child", "Replies", parent_id="sent")
        provider.add_folder("inbox-child", "Candidates", parent_id="inbox")

        folders = await search.list_folder_tree(MAILBOX)

        assert [f.id for f in folders] == ["inbox", "inbox-child"]

    @pytest.mark.asyncio
    async def test_stops_folder_at_cutoff(self, provider: FakeEmailProvider, search):
        provider.add_folder("inbox", "Inbox")
        provider.add_message(make_message("recent", received_at=_days_ago(1)))
        provider.add_message(make_message("recent-2", received_at=_days_ago(2)))
        provider.add_message(make_message("stale", received_at=_days_ago(60)))
        provider.add_message(make_message("stale-2", received_at=_days_ago(90)))
        provider.add_message(make_message("stale-3", received_at=_days_ago(120)))

        result = await search.search_messages(MAILBOX, None, lookback_days=30, now=NOW)

        assert [m.external_id for m in result.messages] == ["recent", "recent-2"]
        # Page two starts with a stale message, so page three is never read.
        assert provider.calls["list_folder_messages"] == 2

    @pytest.mark.asyncio
    async def test_subject_query_applies(self, provider: FakeEmailProvider, search):
        provider.add_folder("inbox", "Inbox")
        provider.add_message(make_message("eng", received_at=_days_ago(1)))
        provider.add_message(make_message("ana", subject="Application: Analyst", received_at=_days_ago(1)))

        result = await search.search_messages(
            MAILBOX, "engineer", mode=RunMode.DEEP_SCAN, lookback_days=30, now=NOW
        )

        assert [m.external_id for m in result.messages] == ["eng"]

    @pytest.mark.asyncio
    async def test_cap_stops_scan(self, provider: FakeEmailProvider, search):
        provider.add_folder("inbox", "Inbox")
        provider.add_folder("archive", "Archive")
        for i in range(3):
            provider.add_message(make_message(f"i{i}", received_at=_days_ago(i + 1)))
            provider.add_message(make_message(f"a{i}", folder_id="archive", received_at=_days_ago(i + 1)))

        result = await search.search_messages(MAILBOX, None, limit=2, lookback_days=30, now=NOW)

        assert [m.external_id for m in result.messages] == ["i0", "i1"]
        assert result.truncated

    @pytest.mark.asyncio
    async def test_cancellation_between_folders(self, provider: FakeEmailProvider, search):
        provider.add_folder("inbox", "Inbox")
        provider.add_folder("archive", "Archive")
        provider.add_message(make_message("i0", received_at=_days_ago(1)))
        provider.add_message(make_message("a0", folder_id="archive", received_at=_days_ago(1)))

        async def _stop_after_inbox() -> bool:
            return provider.calls["list_folder_messages"] >= 1

        result = await search.search_messages(
            MAILBOX, None, lookback_days=30, now=NOW, should_stop=_stop_after_inbox
        )

        assert result.stopped_early
        assert [m.external_id for m in result.messages] == ["i0"]
