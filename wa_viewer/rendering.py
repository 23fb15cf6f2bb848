"""
Render variant classification.

Every message is classified into one variant of a closed set before it is
handed to a client, so views dispatch on the variant instead of comparing
export labels.
"""

import enum
from typing import Optional

from wa_viewer.models import Message


class RenderVariant(str, enum.Enum):
    SENT = "sent"
    RECEIVED = "received"
    NOTIFICATION = "notification"
    ATTACHMENT_MISSING = "attachment_missing"


class DeliveryStatus(str, enum.Enum):
    DELIVERED = "delivered"
    READ = "read"
    NONE = "none"


# Export labels, compared case-insensitively
SENT_LABELS = {"enviadas", "enviada", "sent", "outgoing"}
RECEIVED_LABELS = {"recebidas", "recebida", "received", "incoming"}

DELIVERED_LABELS = {"entregue", "delivered"}
READ_LABELS = {"lida", "read", "lido"}


def classify_message(message: Message) -> RenderVariant:
    """
    Pick the render variant of a message.

    A message whose attachment has a kind label but no file reference is
    ATTACHMENT_MISSING regardless of direction. Unknown type labels render
    as NOTIFICATION.
    """
    if message.attachment is not None and message.attachment.is_missing:
        return RenderVariant.ATTACHMENT_MISSING

    label = _normalize(message.message_type)
    if label in SENT_LABELS:
        return RenderVariant.SENT
    if label in RECEIVED_LABELS:
        return RenderVariant.RECEIVED
    return RenderVariant.NOTIFICATION


def classify_status(status: Optional[str]) -> DeliveryStatus:
    label = _normalize(status)
    if label in READ_LABELS:
        return DeliveryStatus.READ
    if label in DELIVERED_LABELS:
        return DeliveryStatus.DELIVERED
    return DeliveryStatus.NONE


def _normalize(label: Optional[str]) -> str:
    return (label or "").strip().lower()
