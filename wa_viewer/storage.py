import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from sqlalchemy import String, and_, create_engine, event, func, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from wa_viewer.codec import encode_conversation_id
from wa_viewer.errors import StoreUnavailable
from wa_viewer.models import Conversation, Message, MessageRow
from wa_viewer.utils import fold_text

logger = logging.getLogger(__name__)

# Name of the SQL function registered on every connection for search
CASEFOLD_SQL_FUNCTION = "wa_casefold"


class MessageStore:
    """
    Read-only accessor for a WhatsApp SQLite export.

    The store is an explicit handle: construct it with the export path,
    call open() (or use it as a context manager) and close() when done.
    Each operation checks out its own pooled connection, so concurrent
    reads from worker threads are safe. Nothing is ever written.
    """

    def __init__(self, path: str):
        self.path = str(path)
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def open(self) -> "MessageStore":
        """
        Open the export read-only and verify the messages table is present.

        Raises:
            StoreUnavailable: if the file is missing, not a database or has
                no messages table
        """
        if self._engine is not None:
            return self

        db_path = Path(self.path)
        logger.debug(f"Opening message store at {db_path}")
        if not db_path.is_file():
            logger.error(f"Message store not found: {db_path}")
            raise StoreUnavailable(f"Message store not found: {db_path}", path=self.path)

        uri = f"{db_path.resolve().as_uri()}?mode=ro"

        def connect() -> sqlite3.Connection:
            # check_same_thread=False: queries run in Starlette's threadpool
            return sqlite3.connect(uri, uri=True, check_same_thread=False)

        engine = create_engine("sqlite://", creator=connect, poolclass=QueuePool, echo=False)
        event.listen(engine, "connect", _register_functions)

        self._engine = engine
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        if not self.check_health():
            self.close()
            raise StoreUnavailable(
                f"Message store is unreadable or has no 'messages' table: {db_path}",
                path=self.path,
            )

        logger.info(f"Message store opened: {db_path}")
        return self

    def close(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.info(f"Message store closed: {self.path}")

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def __enter__(self) -> "MessageStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """
        Yield a session and convert every database failure into
        StoreUnavailable.
        """
        if self._session_factory is None:
            raise StoreUnavailable("Message store is not open", path=self.path)

        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            logger.error(f"Message store query failed: {e}")
            raise StoreUnavailable(f"Message store query failed: {e}", path=self.path) from e
        finally:
            db.close()

    def check_health(self) -> bool:
        """
        Check if the export is readable and has the messages table.

        Returns:
            True if the store is healthy, False otherwise.
        """
        if self._session_factory is None:
            return False
        logger.debug("Checking message store health...")
        try:
            with self._session_factory() as db:
                result = db.execute(text(
                    "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name='messages'"
                )).scalar()
                if result == 0:
                    logger.error("Message store has no 'messages' table")
                    return False
        except SQLAlchemyError as e:
            logger.error(f"Message store health check failed: {e}")
            return False
        logger.debug("Message store health check passed")
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    def list_conversations(self) -> List[Conversation]:
        """
        List conversations grouped by (contact, source_file).

        Rows with a NULL or empty contact name are left out. Ordering is by
        the most recent message timestamp, newest first.
        """
        logger.info("Listing conversations")

        last_ts = func.max(MessageRow.data_hora_envio).label("last_ts")
        with self._session() as db:
            rows = (
                db.query(
                    MessageRow.nome_contato,
                    MessageRow.source_file,
                    func.count(MessageRow.id).label("message_count"),
                    func.min(MessageRow.data_hora_envio).label("first_ts"),
                    last_ts,
                )
                .filter(MessageRow.nome_contato.isnot(None), MessageRow.nome_contato != "")
                .group_by(MessageRow.nome_contato, MessageRow.source_file)
                .order_by(last_ts.desc(), MessageRow.nome_contato.asc())
                .all()
            )

        conversations = [
            Conversation(
                id=encode_conversation_id(row.nome_contato, row.source_file),
                contact=row.nome_contato,
                source_file=row.source_file,
                message_count=row.message_count,
                first_ts=row.first_ts,
                last_ts=row.last_ts,
            )
            for row in rows
        ]
        logger.info(f"Found {len(conversations)} conversations")
        return conversations

    def count_messages(self, contact: str, source_file: Optional[str]) -> int:
        with self._session() as db:
            total = (
                db.query(func.count(MessageRow.id))
                .filter(_conversation_filter(contact, source_file))
                .scalar()
            )
        logger.debug(f"Conversation {contact!r}/{source_file!r} has {total} messages")
        return total or 0

    def get_messages(
        self,
        contact: str,
        source_file: Optional[str],
        limit: int,
        offset: int,
    ) -> List[Message]:
        """
        Retrieve the window [offset, offset + limit) of a conversation.

        Args:
            contact: Contact name
            source_file: Source file label (None matches NULL)
            limit: Maximum number of messages to return
            offset: Number of messages to skip

        Returns:
            Messages ordered by ascending id
        """
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must be non-negative")

        logger.info(f"Querying messages: contact={contact!r}, limit={limit}, offset={offset}")
        with self._session() as db:
            rows = (
                db.query(MessageRow)
                .filter(_conversation_filter(contact, source_file))
                .order_by(MessageRow.id.asc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            messages = [Message.from_row(row) for row in rows]

        logger.info(f"Retrieved {len(messages)} messages")
        return messages

    def search_messages(self, contact: str, source_file: Optional[str], term: str) -> List[int]:
        """
        Find messages whose text contains `term`, ignoring case.

        Case folding is Unicode aware and LIKE wildcards in `term` are
        matched literally.

        Returns:
            Matching message ids in ascending order
        """
        logger.info(f"Searching messages: contact={contact!r}, term={term!r}")
        if not term:
            return []

        folded_text = getattr(func, CASEFOLD_SQL_FUNCTION)(MessageRow.texto_mensagem, type_=String)
        with self._session() as db:
            rows = (
                db.query(MessageRow.id)
                .filter(_conversation_filter(contact, source_file))
                .filter(folded_text.contains(fold_text(term), autoescape=True))
                .order_by(MessageRow.id.asc())
                .all()
            )

        message_ids = [row.id for row in rows]
        logger.info(f"Found {len(message_ids)} matching messages")
        return message_ids

    def get_message_index(
        self,
        contact: str,
        source_file: Optional[str],
        message_id: int,
    ) -> Optional[int]:
        """
        0-based position of a message inside its conversation.

        Returns:
            The index, or None if the message is not part of the conversation
        """
        conversation = _conversation_filter(contact, source_file)
        with self._session() as db:
            exists = (
                db.query(MessageRow.id)
                .filter(conversation, MessageRow.id == message_id)
                .first()
            )
            if exists is None:
                logger.info(f"Message {message_id} not found in conversation {contact!r}")
                return None
            count = (
                db.query(func.count(MessageRow.id))
                .filter(conversation, MessageRow.id <= message_id)
                .scalar()
            )

        index = max(0, count - 1)
        logger.debug(f"Message {message_id} has index {index}")
        return index


def _conversation_filter(contact: str, source_file: Optional[str]):
    if source_file is None:
        source_clause = MessageRow.source_file.is_(None)
    else:
        source_clause = MessageRow.source_file == source_file
    return and_(MessageRow.nome_contato == contact, source_clause)


def _register_functions(dbapi_connection, connection_record) -> None:
    dbapi_connection.create_function(
        CASEFOLD_SQL_FUNCTION, 1, fold_text, deterministic=True
    )
