"""
Sliding window over a conversation's message log.

A conversation opens on its most recent batch and grows backward as the user
scrolls towards the top. The window always covers [offset, total), so the
only state needed is the offset of its first message.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from starlette.concurrency import run_in_threadpool

from wa_viewer.codec import decode_conversation_id
from wa_viewer.models import Message
from wa_viewer.storage import MessageStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 400
DEFAULT_NEAR_TOP_THRESHOLD_PX = 200


def initial_offset(total: int, batch_size: int) -> int:
    """Offset of the first window: the last `batch_size` messages."""
    return max(0, total - batch_size)


def older_window(offset: int, batch_size: int) -> tuple:
    """
    Window that precedes one starting at `offset`.

    Returns:
        (new_offset, limit)
    """
    new_offset = max(0, offset - batch_size)
    return new_offset, offset - new_offset


def covering_offset(index: int, total: int, batch_size: int) -> int:
    """
    Window offset the controller reaches, loading older batches, once the
    message at `index` is inside the window.
    """
    offset = initial_offset(total, batch_size)
    if index >= offset:
        return offset
    batches = -(-(offset - index) // batch_size)
    return max(0, offset - batches * batch_size)


def preserve_scroll(scroll_top: float, old_height: float, new_height: float) -> float:
    """Scroll position keeping the same content in view after a prepend."""
    return scroll_top + (new_height - old_height)


@dataclass
class ConversationWindow:
    conversation_id: str
    contact: str
    source_file: Optional[str]
    total: int
    offset: int
    messages: List[Message] = field(default_factory=list)

    @property
    def has_older(self) -> bool:
        return self.offset > 0

    @property
    def message_ids(self) -> List[int]:
        return [m.id for m in self.messages]

    def __contains__(self, message_id: int) -> bool:
        return any(m.id == message_id for m in self.messages)


class PaginationController:
    """
    Owns the window of the conversation currently open.

    At most one LoadOlder fetch is in flight; triggers that arrive meanwhile
    are dropped. Opening another conversation resets the window, and results
    of fetches started for the previous one are discarded when they arrive.
    """

    def __init__(
        self,
        store: MessageStore,
        batch_size: int = DEFAULT_BATCH_SIZE,
        near_top_threshold: int = DEFAULT_NEAR_TOP_THRESHOLD_PX,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.batch_size = batch_size
        self.near_top_threshold = near_top_threshold
        self.window: Optional[ConversationWindow] = None
        self._generation = 0
        self._loading = False

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def has_older(self) -> bool:
        return self.window is not None and self.window.has_older

    async def open(self, conversation_id: str) -> Optional[ConversationWindow]:
        """
        Open a conversation on its latest batch.

        Raises:
            DecodeError: if conversation_id is malformed
            StoreUnavailable: if the store cannot be read

        Returns:
            The new window, or None if another conversation was opened
            before this one finished loading
        """
        contact, source_file = decode_conversation_id(conversation_id)

        self._generation += 1
        generation = self._generation
        self.window = None
        self._loading = False

        total = await run_in_threadpool(self.store.count_messages, contact, source_file)
        offset = initial_offset(total, self.batch_size)
        logger.info(f"Opening conversation {contact!r}: total={total}, offset={offset}")
        messages = await run_in_threadpool(
            self.store.get_messages, contact, source_file, self.batch_size, offset
        )

        if generation != self._generation:
            logger.info(f"Discarding initial window of {contact!r}, conversation switched")
            return None

        self.window = ConversationWindow(
            conversation_id=conversation_id,
            contact=contact,
            source_file=source_file,
            total=total,
            offset=offset,
            messages=messages,
        )
        return self.window

    def close(self) -> None:
        self._generation += 1
        self.window = None
        self._loading = False

    def should_load_older(self, scroll_top: float) -> bool:
        return (
            scroll_top < self.near_top_threshold
            and self.has_older
            and not self._loading
        )

    async def load_older(self) -> List[Message]:
        """
        Prepend the previous batch to the window.

        A failed fetch propagates its error and leaves the window as it was.

        Returns:
            The prepended messages; empty when nothing was loaded
        """
        window = self.window
        if window is None or not window.has_older:
            return []
        if self._loading:
            logger.debug("LoadOlder already in flight, trigger dropped")
            return []

        generation = self._generation
        new_offset, limit = older_window(window.offset, self.batch_size)
        logger.info(f"Loading older messages: offset={new_offset}, limit={limit}")

        self._loading = True
        try:
            older = await run_in_threadpool(
                self.store.get_messages, window.contact, window.source_file, limit, new_offset
            )
        finally:
            if generation == self._generation:
                self._loading = False

        if generation != self._generation or self.window is not window:
            logger.info("Discarding older messages, conversation switched")
            return []

        window.messages[:0] = older
        window.offset = new_offset
        logger.debug(f"Window now covers offset {window.offset} ({len(window.messages)} messages)")
        return older

    async def on_scroll(self, scroll_top: float, scroll_height: float, measure_height) -> float:
        """
        Handle a viewport scroll event.

        Args:
            scroll_top: Current scroll offset of the viewport
            scroll_height: Content height before any prepend
            measure_height: Callable returning the content height after the
                window has been re-rendered

        Returns:
            The scroll offset the viewport should use
        """
        if not self.should_load_older(scroll_top):
            return scroll_top
        older = await self.load_older()
        if not older:
            return scroll_top
        return preserve_scroll(scroll_top, scroll_height, measure_height())

    async def ensure_loaded(self, message_index: int) -> bool:
        """
        Load older batches until the message at `message_index` is inside
        the window.

        Returns:
            True if the window covers the index
        """
        while self.window is not None and self.window.offset > message_index:
            if self._loading:
                return False
            window = self.window
            await self.load_older()
            if self.window is not window:
                return False
        return self.window is not None and message_index < self.window.total
