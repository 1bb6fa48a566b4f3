"""SearchOrchestrator: decides which messages a run examines.

Two strategies are supported:

* **graph-search** issues one provider-native full-text query across all
  folders, follows continuation cursors up to ``max_search_pages`` and
  then filters locally (attachments, lookback window, subject tokens),
  because provider-side filtering in this mode is approximate.
* **deep-scan** walks the folder tree breadth-first and reads every
  folder newest-first with server-side date and attachment filters,
  stopping a folder at the first message older than the cutoff.

When no mode is requested, graph-search is used if query text is given
and deep-scan otherwise.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

import structlog

from .config import ImportConfig
from .errors import InefficientFilterError
from .models import EmailMessage, MailFolder, RunMode, SearchResult
from .providers.interface import EmailProvider

logger = structlog.get_logger()

StopCheck = Callable[[], Awaitable[bool]]

SKIPPED_FOLDER_NAMES = frozenset({"sent items"})
SKIPPED_WELL_KNOWN = frozenset({"sentitems"})

_INBOX_NAMES = frozenset({"inbox"})
_SENT_MARKERS = ("sent",)
_TRASH_NAMES = frozenset({"deleted items", "deleteditems", "trash", "bin", "recycle bin"})


def subject_matches(subject: str, query: str | None) -> bool:
    """Case-insensitive token-AND substring match; an empty query matches all."""
    if not query:
        return True
    haystack = subject.lower()
    return all(token in haystack for token in query.lower().split())


def is_skipped_folder(folder: MailFolder) -> bool:
    if folder.well_known_name and folder.well_known_name.lower() in SKIPPED_WELL_KNOWN:
        return True
    return folder.display_name.strip().lower() in SKIPPED_FOLDER_NAMES


def folder_priority(folder: MailFolder) -> int:
    """Rank folders: inbox, then sent-like, then trash, then everything else."""
    name = (folder.well_known_name or folder.display_name).strip().lower()
    display = folder.display_name.strip().lower()
    if name in _INBOX_NAMES or display in _INBOX_NAMES:
        return 0
    if display.startswith(_SENT_MARKERS):
        return 1
    if name in _TRASH_NAMES or display in _TRASH_NAMES:
        return 2
    return 3


def resolve_mode(query: str | None, mode: RunMode | None) -> RunMode:
    if mode is RunMode.GRAPH_SEARCH and not (query and query.strip()):
        logger.info("graph_search_without_query", fallback=RunMode.DEEP_SCAN.value)
        return RunMode.DEEP_SCAN
    if mode is not None:
        return mode
    return RunMode.GRAPH_SEARCH if query and query.strip() else RunMode.DEEP_SCAN


async def _never_stop() -> bool:
    return False


class SearchOrchestrator:
    """Enumerates candidate messages for a run under a hard result cap."""

    def __init__(self, provider: EmailProvider, config: ImportConfig) -> None:
        self._provider = provider
        self._config = config

    async def search_messages(
        self,
        mailbox: str,
        query: str | None,
        *,
        limit: int | None = None,
        lookback_days: int | None = None,
        mode: RunMode | None = None,
        should_stop: StopCheck | None = None,
        now: datetime | None = None,
    ) -> SearchResult:
        """Return messages with attachments received inside the lookback
        window whose subject contains every query token.

        *should_stop* is awaited between folders and between pages; when it
        returns ``True`` the scan ends early with what it has so far.
        """
        limit = limit or self._config.max_messages
        lookback = lookback_days if lookback_days is not None else self._config.lookback_days
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=lookback)
        resolved = resolve_mode(query, mode)
        stop = should_stop or _never_stop

        log = logger.bind(mailbox=mailbox, mode=resolved.value, query=query, limit=limit)
        log.info("message_search_started", cutoff=cutoff.isoformat())

        if resolved is RunMode.GRAPH_SEARCH:
            result = await self._graph_search(mailbox, query or "", limit, cutoff, stop)
        else:
            result = await self._deep_scan(mailbox, query, limit, cutoff, stop)

        log.info(
            "message_search_finished",
            found=len(result.messages),
            raw_count=result.raw_count,
            pages=result.pages_fetched,
            truncated=result.truncated,
            relaxed_filter=result.relaxed_filter,
            stopped_early=result.stopped_early,
        )
        return result

    # ------------------------------------------------------------------
    # graph-search
    # ------------------------------------------------------------------

    async def _graph_search(
        self,
        mailbox: str,
        query: str,
        limit: int,
        cutoff: datetime,
        should_stop: StopCheck,
    ) -> SearchResult:
        restrictive = True
        relaxed = False
        cursor: str | None = None
        pages = 0
        raw: list[EmailMessage] = []
        truncated = False
        stopped = False

        while True:
            if await should_stop():
                stopped = True
                break
            try:
                page = await self._provider.search_messages(
                    mailbox,
                    query,
                    restrict_to_attachments=restrictive,
                    cursor=cursor,
                )
            except InefficientFilterError:
                if not restrictive:
                    raise
                # Retry once without the server-side predicate; the local
                # post-filter below does that work instead.
                logger.warning("graph_search_filter_relaxed", mailbox=mailbox)
                restrictive = False
                relaxed = True
                cursor = None
                pages = 0
                raw = []
                continue

            pages += 1
            raw.extend(page.messages)
            cursor = page.next_cursor
            if not cursor:
                break
            if pages >= self._config.max_search_pages:
                truncated = True
                logger.warning("graph_search_page_ceiling", pages=pages)
                break

        filtered = [
            m
            for m in raw
            if m.has_attachments and m.received_at >= cutoff and subject_matches(m.subject, query)
        ]
        seen: set[str] = set()
        unique: list[EmailMessage] = []
        for message in sorted(filtered, key=lambda m: m.received_at, reverse=True):
            if message.external_id in seen:
                continue
            seen.add(message.external_id)
            unique.append(message)

        if len(unique) > limit:
            truncated = True
            unique = unique[:limit]

        return SearchResult(
            messages=unique,
            mode_used=RunMode.GRAPH_SEARCH,
            raw_count=len(raw),
            pages_fetched=pages,
            truncated=truncated,
            relaxed_filter=relaxed,
            stopped_early=stopped,
        )

    # ------------------------------------------------------------------
    # deep-scan
    # ------------------------------------------------------------------

    async def list_folder_tree(self, mailbox: str, should_stop: StopCheck | None = None) -> list[MailFolder]:
        """Breadth-first walk of the folder tree, without the Sent Items subtree."""
        stop = should_stop or _never_stop
        found: list[MailFolder] = []
        queue: deque[str | None] = deque([None])
        while queue:
            if await stop():
                break
            parent_id = queue.popleft()
            for folder in await self._provider.list_folders(mailbox, parent_id):
                if is_skipped_folder(folder):
                    logger.debug("folder_skipped", folder=folder.display_name)
                    continue
                found.append(folder)
                if folder.child_folder_count > 0:
                    queue.append(folder.id)
        return found

    async def _deep_scan(
        self,
        mailbox: str,
        query: str | None,
        limit: int,
        cutoff: datetime,
        should_stop: StopCheck,
    ) -> SearchResult:
        folders = await self.list_folder_tree(mailbox, should_stop)
        # sorted() is stable, so BFS order is kept within a priority tier.
        ordered = sorted(folders, key=folder_priority)

        messages: list[EmailMessage] = []
        seen: set[str] = set()
        raw_count = 0
        pages = 0
        truncated = False
        stopped = False

        for folder in ordered:
            if len(messages) >= limit:
                break
            cursor: str | None = None
            folder_done = False
            while not folder_done:
                if await should_stop():
                    stopped = True
                    break
                page = await self._provider.list_folder_messages(
                    mailbox, folder.id, since=cutoff, cursor=cursor
                )
                pages += 1
                for message in page.messages:
                    raw_count += 1
                    if message.received_at < cutoff:
                        # Pages are newest-first, nothing older can qualify.
                        folder_done = True
                        break
                    if not message.has_attachments or message.external_id in seen:
                        continue
                    if not subject_matches(message.subject, query):
                        continue
                    seen.add(message.external_id)
                    messages.append(message)
                    if len(messages) >= limit:
                        truncated = True
                        folder_done = True
                        break
                cursor = page.next_cursor
                if not cursor:
                    folder_done = True
            if stopped:
                break
            logger.debug("folder_scanned", folder=folder.display_name, total=len(messages))

        return SearchResult(
            messages=messages,
            mode_used=RunMode.DEEP_SCAN,
            raw_count=raw_count,
            pages_fetched=pages,
            truncated=truncated,
            stopped_early=stopped,
        )
