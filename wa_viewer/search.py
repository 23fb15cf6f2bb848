"""
In-conversation search.

Two scopes exist: "conversation" asks the store and covers every message,
"window" filters the messages already loaded. A deployment uses one scope
for every search (Settings.SEARCH_SCOPE).
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from starlette.concurrency import run_in_threadpool

from wa_viewer.models import Message
from wa_viewer.pagination import covering_offset
from wa_viewer.storage import MessageStore
from wa_viewer.utils import fold_text

logger = logging.getLogger(__name__)

SCOPE_CONVERSATION = "conversation"
SCOPE_WINDOW = "window"
SEARCH_SCOPES = (SCOPE_CONVERSATION, SCOPE_WINDOW)


def filter_window(messages: Sequence[Message], term: str) -> List[int]:
    """Ids of loaded messages whose text contains `term`, ignoring case."""
    if not term:
        return []
    needle = fold_text(term)
    return sorted(m.id for m in messages if m.text and needle in fold_text(m.text))


@dataclass(frozen=True)
class MatchLocation:
    message_id: int
    index: int
    window_offset: int


class SearchEngine:
    def __init__(self, store: MessageStore, scope: str = SCOPE_CONVERSATION):
        if scope not in SEARCH_SCOPES:
            raise ValueError(f"Unknown search scope: {scope!r}")
        self.store = store
        self.scope = scope

    async def search(
        self,
        contact: str,
        source_file: Optional[str],
        term: str,
        loaded: Optional[Sequence[Message]] = None,
    ) -> List[int]:
        """
        Search a conversation.

        Args:
            loaded: Messages currently loaded; required by the window scope,
                ignored by the conversation scope

        Returns:
            Matching message ids in ascending order
        """
        if self.scope == SCOPE_CONVERSATION:
            return await run_in_threadpool(self.store.search_messages, contact, source_file, term)

        if loaded is None:
            raise ValueError("Window search needs the loaded messages")
        ids = filter_window(loaded, term)
        logger.info(f"Window search for {term!r} matched {len(ids)} of {len(loaded)} messages")
        return ids

    async def locate(
        self,
        contact: str,
        source_file: Optional[str],
        message_id: int,
        batch_size: int,
    ) -> Optional[MatchLocation]:
        """
        Where a match sits in the conversation and which window offset has
        to be reached for it to be rendered.
        """
        index = await run_in_threadpool(
            self.store.get_message_index, contact, source_file, message_id
        )
        if index is None:
            return None
        total = await run_in_threadpool(self.store.count_messages, contact, source_file)
        return MatchLocation(
            message_id=message_id,
            index=index,
            window_offset=covering_offset(index, total, batch_size),
        )


class SearchCursor:
    """
    Current match among ascending search results.

    next() stops at the last match and prev() at the first; there is no
    wraparound.
    """

    def __init__(self, message_ids: Sequence[int] = ()):
        self.message_ids = list(message_ids)
        self.position = 0

    def __len__(self) -> int:
        return len(self.message_ids)

    @property
    def current(self) -> Optional[int]:
        if not self.message_ids:
            return None
        return self.message_ids[self.position]

    def next(self) -> Optional[int]:
        if self.message_ids:
            self.position = min(self.position + 1, len(self.message_ids) - 1)
        return self.current

    def prev(self) -> Optional[int]:
        if self.message_ids:
            self.position = max(self.position - 1, 0)
        return self.current

    def reset(self, message_ids: Sequence[int]) -> None:
        self.message_ids = list(message_ids)
        self.position = 0
