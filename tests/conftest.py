"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite export (built with the same SQLAlchemy table
the app reads) and its own media folder, so nothing is shared between tests.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, insert

from wa_viewer.codec import encode_conversation_id
from wa_viewer.config import Settings, get_settings
from wa_viewer.main import create_app
from wa_viewer.models import Base, MessageRow
from wa_viewer.storage import MessageStore

# Clear settings cache so values from a developer .env never leak into tests
get_settings.cache_clear()

MARIA = ("Maria Silva", "Conversa do WhatsApp com Maria Silva.txt")
GROUP = ("Grupo Família", "Conversa do WhatsApp com Grupo Família.txt")
BIG = ("Big Chat", "big.txt")

IMAGE_UUID = "72a52c56-5494-40a4-9d26-35acf057c8a2"
AUDIO_UUID = "503800a3-e942-4cdb-a736-015e3bfd6d01"

IMAGE_FILE = f"2025-10-29 18 17 33 - Maria Silva - Foto - {IMAGE_UUID}.jpg"
AUDIO_FILE = f"2023-11-30 17 09 46 - Maria Silva - {AUDIO_UUID}.mp3"

COLUMNS = (
    "id", "nome_contato", "data_hora_envio", "tipo_mensagem", "nome_remetente_grupo",
    "status_mensagem", "texto_mensagem", "anexo_tipo", "anexo_tamanho", "anexo_id_arquivo",
    "source_file",
)

SEED_ROWS = [
    (1, MARIA[0], "2024-01-10 09:00:00", "Recebidas", None, None, "oi tudo bem", None, None, None, MARIA[1]),
    (2, MARIA[0], "2024-01-10 09:01:00", "Enviadas", None, "Lida", "não", None, None, None, MARIA[1]),
    (3, MARIA[0], "2024-01-10 09:02:00", "Recebidas", None, None, "oi de novo", None, None, None, MARIA[1]),
    (4, MARIA[0], "2024-01-10 09:03:00", "Recebidas", None, None, None, "Imagem", 2048, IMAGE_UUID, MARIA[1]),
    (5, MARIA[0], "2024-01-10 09:04:00", "Enviadas", None, "Entregue", None, "Áudio", 512,
     f"{AUDIO_UUID}.opus", MARIA[1]),
    (6, MARIA[0], "2024-01-10 09:05:00", "Recebidas", None, None, None, "Vídeo", None, None, MARIA[1]),
    (7, MARIA[0], "2024-01-10 09:06:00", "Enviadas", None, None, "100% certo", None, None, None, MARIA[1]),
    (8, GROUP[0], "2024-02-01 10:00:00", "Recebidas", "Tia Ana", None, "Bom dia a todos", None, None, None, GROUP[1]),
    (9, GROUP[0], "2024-02-01 10:05:00", "Notificação", None, None, "Tia Ana entrou no grupo", None, None, None,
     GROUP[1]),
    (10, MARIA[0], "2024-01-11 08:00:00", "Recebidas", None, None, "ÓTIMO então", None, None, None, MARIA[1]),
    (11, "a_b", "2023-05-01 10:00:00", "Recebidas", None, None, "first pair", None, None, None, "c"),
    (12, "a", "2023-05-01 09:00:00", "Recebidas", None, None, "second pair", None, None, None, "b_c"),
    (13, None, "2023-06-01 09:00:00", "Recebidas", None, None, "no contact", None, None, None, "x.txt"),
    (14, "", "2023-06-01 09:00:00", "Recebidas", None, None, "empty contact", None, None, None, "x.txt"),
    (15, "Sem Arquivo", "2023-01-01 08:00:00", "Recebidas", None, None, "sem source", None, None, None, None),
]


def write_export(path, rows) -> str:
    """Create a SQLite export at `path` holding `rows`."""
    engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(bind=engine)
    with engine.begin() as conn:
        conn.execute(insert(MessageRow), [dict(zip(COLUMNS, row)) for row in rows])
    engine.dispose()
    return str(path)


def big_rows(count: int):
    return [
        (i, BIG[0], f"2024-03-01 {i // 3600:02d}:{(i // 60) % 60:02d}:{i % 60:02d}", "Recebidas",
         None, None, f"message {i}", None, None, None, BIG[1])
        for i in range(1, count + 1)
    ]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def export_path(tmp_path):
    return write_export(tmp_path / "whatsapp_chats.db", SEED_ROWS)


@pytest.fixture
def big_export_path(tmp_path):
    return write_export(tmp_path / "big.db", big_rows(1000))


@pytest.fixture
def media_dir(tmp_path):
    media = tmp_path / "Anexos"
    media.mkdir()
    (media / IMAGE_FILE).write_bytes(b"\xff\xd8\xff\xe0fake-jpeg")
    (media / AUDIO_FILE).write_bytes(b"ID3fake-mp3")
    (media / "relatorio.pdf").write_bytes(b"%PDF-1.4 fake")
    return media


@pytest.fixture
def store(export_path):
    with MessageStore(export_path) as opened:
        yield opened


@pytest.fixture
def big_store(big_export_path):
    with MessageStore(big_export_path) as opened:
        yield opened


@pytest.fixture
def maria_id():
    return encode_conversation_id(*MARIA)


@pytest.fixture
def big_id():
    return encode_conversation_id(*BIG)


@pytest.fixture
def settings(export_path, media_dir):
    return Settings(
        DATABASE_PATH=export_path,
        ATTACHMENTS_ROOT=str(media_dir),
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def client(settings):
    """Test client over the seeded export and media folder."""
    with TestClient(create_app(settings)) as test_client:
        yield test_client
