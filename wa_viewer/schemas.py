"""
Pydantic schemas for API responses.

Message fields keep the column names of the exported `messages` table on
the wire; Python code uses the English attribute names.
"""

from typing import Optional

from pydantic import BaseModel, Field

from wa_viewer.attachments import AttachmentIndex
from wa_viewer.models import Conversation, Message
from wa_viewer.rendering import classify_message, classify_status


# =============================================================================
# Conversations
# =============================================================================

class ConversationResponse(BaseModel):
    """A (contact, source_file) grouping of messages."""
    id: str = Field(..., description="Opaque conversation identifier")
    contact: str = Field(
        ...,
        alias="nome_contato",
        serialization_alias="nome_contato",
        description="Contact name"
    )
    source_file: Optional[str] = Field(None, description="Source file label")
    message_count: int = Field(..., ge=0, description="Number of messages")
    first_ts: Optional[str] = Field(None, description="Timestamp of the first message")
    last_ts: Optional[str] = Field(None, description="Timestamp of the last message")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "ConversationResponse":
        return cls(
            id=conversation.id,
            contact=conversation.contact,
            source_file=conversation.source_file,
            message_count=conversation.message_count,
            first_ts=conversation.first_ts,
            last_ts=conversation.last_ts,
        )


# =============================================================================
# Messages
# =============================================================================

class AttachmentView(BaseModel):
    """
    Attachment descriptor plus its resolution against the media folder.

    kind_label is the stored label, never inferred. inferred_kind comes from
    the resolved file and is null when the media is unavailable.
    """
    kind_label: Optional[str] = Field(None, alias="anexo_tipo", serialization_alias="anexo_tipo")
    size: Optional[int] = Field(None, alias="anexo_tamanho", serialization_alias="anexo_tamanho")
    reference: Optional[str] = Field(
        None, alias="anexo_id_arquivo", serialization_alias="anexo_id_arquivo"
    )
    available: bool = Field(..., description="Whether the file was found in the media folder")
    url: Optional[str] = Field(None, description="Display URL of the resolved file")
    inferred_kind: Optional[str] = Field(None, description="image, video, audio, document or unknown")

    model_config = {"populate_by_name": True}


class MessageResponse(BaseModel):
    id: int
    contact: str = Field(..., alias="nome_contato", serialization_alias="nome_contato")
    timestamp: Optional[str] = Field(None, alias="data_hora_envio", serialization_alias="data_hora_envio")
    message_type: Optional[str] = Field(None, alias="tipo_mensagem", serialization_alias="tipo_mensagem")
    group_sender: Optional[str] = Field(
        None, alias="nome_remetente_grupo", serialization_alias="nome_remetente_grupo"
    )
    status: Optional[str] = Field(None, alias="status_mensagem", serialization_alias="status_mensagem")
    text: Optional[str] = Field(None, alias="texto_mensagem", serialization_alias="texto_mensagem")
    render_variant: str = Field(..., description="sent, received, notification or attachment_missing")
    delivery_status: str = Field(..., description="delivered, read or none")
    attachment: Optional[AttachmentView] = None

    model_config = {"populate_by_name": True}

    @classmethod
    def from_message(
        cls,
        message: Message,
        attachments: Optional[AttachmentIndex] = None,
    ) -> "MessageResponse":
        attachment = None
        if message.attachment is not None:
            resolved = None
            if attachments is not None and message.attachment.reference:
                resolved = attachments.resolve(message.attachment.reference)
            attachment = AttachmentView(
                kind_label=message.attachment.kind_label,
                size=message.attachment.size,
                reference=message.attachment.reference,
                available=resolved is not None,
                url=resolved.url if resolved else None,
                inferred_kind=resolved.inferred_kind if resolved else None,
            )

        return cls(
            id=message.id,
            contact=message.contact,
            timestamp=message.timestamp,
            message_type=message.message_type,
            group_sender=message.group_sender,
            status=message.status,
            text=message.text,
            render_variant=classify_message(message).value,
            delivery_status=classify_status(message.status).value,
            attachment=attachment,
        )


class MessagesPageResponse(BaseModel):
    """
    A page of a conversation in ascending id order.

    - has_more: newer messages exist after this page
    - has_older: older messages exist before this page
    """
    conversation_id: str
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0, description="Messages in the conversation")
    limit: int = Field(..., ge=1)
    offset: int = Field(..., ge=0)
    has_more: bool
    has_older: bool


class SearchResponse(BaseModel):
    conversation_id: str
    q: str
    scope: str = Field(..., description="conversation or window")
    message_ids: list[int] = Field(default_factory=list, description="Ascending matching ids")


class MessageIndexResponse(BaseModel):
    message_id: int
    index: int = Field(..., ge=0, description="0-based position inside the conversation")
    window_offset: int = Field(..., ge=0, description="Window offset that renders the message")


# =============================================================================
# Attachments
# =============================================================================

class AttachmentResolutionResponse(BaseModel):
    url: str
    inferred_kind: str


class ReindexResponse(BaseModel):
    files_indexed: int = Field(..., ge=0)
    urls_revoked: int = Field(..., ge=0)


# =============================================================================
# Misc
# =============================================================================

class ViewerConfigResponse(BaseModel):
    """Client-side paging and search parameters of this deployment."""
    page_batch_size: int
    max_page_size: int
    near_top_threshold_px: int
    search_scope: str


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
