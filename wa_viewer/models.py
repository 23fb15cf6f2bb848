"""
Database table definition and the immutable records built from it.

The `messages` table comes from an external export, so the column names are
kept exactly as exported. For Pydantic response schemas, see schemas.py.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import Column, Integer, String, Text
from sqlalchemy.orm import declarative_base

# Base class for SQLAlchemy models
Base = declarative_base()


class MessageRow(Base):
    """
    SQLAlchemy model for the exported WhatsApp messages.

    Table: messages
    Primary Key: id (monotonic, defines the order inside a conversation)
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True)
    nome_contato = Column(String, index=True)
    data_hora_envio = Column(String)
    tipo_mensagem = Column(String)
    nome_remetente_grupo = Column(String, nullable=True)
    status_mensagem = Column(String, nullable=True)
    texto_mensagem = Column(Text, nullable=True)
    anexo_tipo = Column(String, nullable=True)
    anexo_tamanho = Column(Integer, nullable=True)
    anexo_id_arquivo = Column(String, nullable=True)
    source_file = Column(String, nullable=True, index=True)


@dataclass(frozen=True)
class AttachmentDescriptor:
    """Attachment columns of a message. The kind label is never inferred."""
    kind_label: Optional[str]
    size: Optional[int]
    reference: Optional[str]

    @property
    def is_missing(self) -> bool:
        # A kind label with no file reference: media not in the backup
        return not self.reference


@dataclass(frozen=True)
class Message:
    id: int
    contact: str
    timestamp: str
    message_type: str
    group_sender: Optional[str]
    status: Optional[str]
    text: Optional[str]
    attachment: Optional[AttachmentDescriptor]
    source_file: Optional[str] = None

    @classmethod
    def from_row(cls, row: MessageRow) -> "Message":
        attachment = None
        if row.anexo_tipo or row.anexo_id_arquivo:
            attachment = AttachmentDescriptor(
                kind_label=row.anexo_tipo,
                size=_coerce_size(row.anexo_tamanho),
                reference=row.anexo_id_arquivo or None,
            )
        return cls(
            id=row.id,
            contact=row.nome_contato,
            timestamp=row.data_hora_envio,
            message_type=row.tipo_mensagem,
            group_sender=row.nome_remetente_grupo,
            status=row.status_mensagem,
            text=row.texto_mensagem,
            attachment=attachment,
            source_file=row.source_file,
        )


@dataclass(frozen=True)
class Conversation:
    id: str
    contact: str
    source_file: Optional[str]
    message_count: int
    first_ts: Optional[str]
    last_ts: Optional[str]


def _coerce_size(value) -> Optional[int]:
    # Some exports store the size as text
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
