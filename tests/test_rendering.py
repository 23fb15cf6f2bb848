"""
Tests for render variant classification.
"""

import pytest

from wa_viewer.models import AttachmentDescriptor, Message
from wa_viewer.rendering import DeliveryStatus, RenderVariant, classify_message, classify_status


def make_message(message_type, attachment=None):
    return Message(
        id=1,
        contact="Ana",
        timestamp="2024-01-01 10:00",
        message_type=message_type,
        group_sender=None,
        status=None,
        text=None,
        attachment=attachment,
    )


class TestClassifyMessage:
    @pytest.mark.parametrize("label, expected", [
        ("Enviadas", RenderVariant.SENT),
        ("enviada", RenderVariant.SENT),
        ("Recebidas", RenderVariant.RECEIVED),
        (" RECEIVED ", RenderVariant.RECEIVED),
        ("Notificação", RenderVariant.NOTIFICATION),
        ("", RenderVariant.NOTIFICATION),
        (None, RenderVariant.NOTIFICATION),
    ])
    def test_message_type(self, label, expected):
        assert classify_message(make_message(label)) is expected

    def test_attachment_missing(self):
        attachment = AttachmentDescriptor(kind_label="Vídeo", size=None, reference=None)
        assert classify_message(make_message("Enviadas", attachment)) is RenderVariant.ATTACHMENT_MISSING

    def test_present_attachment_keeps_direction(self):
        attachment = AttachmentDescriptor(kind_label="Imagem", size=10, reference="abc.jpg")
        assert classify_message(make_message("Recebidas", attachment)) is RenderVariant.RECEIVED


class TestClassifyStatus:
    @pytest.mark.parametrize("label, expected", [
        ("Lida", DeliveryStatus.READ),
        ("Entregue", DeliveryStatus.DELIVERED),
        ("delivered", DeliveryStatus.DELIVERED),
        (None, DeliveryStatus.NONE),
        ("Pendente", DeliveryStatus.NONE),
    ])
    def test_status(self, label, expected):
        assert classify_status(label) is expected
