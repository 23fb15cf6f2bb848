import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Optional

import anyio
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import FileResponse, JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.requests import ClientDisconnect

from wa_viewer.attachments import (
    MATCH_FRAGMENT,
    AttachmentIndex,
    guess_content_type,
)
from wa_viewer.codec import decode_conversation_id
from wa_viewer.config import Settings, get_settings
from wa_viewer.errors import DecodeError, StoreUnavailable, TransferAborted
from wa_viewer.logging_utils import RequestLoggingMiddleware, log_attachment_data, setup_logging
from wa_viewer.metrics import get_metrics, get_metrics_content_type, record_attachment_outcome
from wa_viewer.pagination import initial_offset
from wa_viewer.schemas import (
    AttachmentResolutionResponse,
    ConversationResponse,
    ErrorResponse,
    HealthResponse,
    MessageIndexResponse,
    MessageResponse,
    MessagesPageResponse,
    ReindexResponse,
    SearchResponse,
    ViewerConfigResponse,
)
from wa_viewer.search import SCOPE_WINDOW, SearchEngine
from wa_viewer.storage import MessageStore

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Application State & Dependencies
# =============================================================================

def build_attachment_index(settings: Settings) -> AttachmentIndex:
    """
    Index the configured media folder, or return an empty index when no
    folder is configured or it does not exist.
    """
    if not settings.ATTACHMENTS_ROOT:
        logger.info("ATTACHMENTS_ROOT not configured, attachments unavailable")
        return AttachmentIndex(url_prefix=settings.MEDIA_URL_PREFIX)
    try:
        return AttachmentIndex.from_folder(settings.ATTACHMENTS_ROOT, url_prefix=settings.MEDIA_URL_PREFIX)
    except NotADirectoryError as e:
        logger.error(str(e))
        return AttachmentIndex(url_prefix=settings.MEDIA_URL_PREFIX)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: open the message store and index the media folder
    - Shutdown: revoke attachment URLs and close the store
    """
    settings: Settings = app.state.settings

    store = MessageStore(settings.DATABASE_PATH)
    try:
        await run_in_threadpool(store.open)
    except StoreUnavailable as e:
        # Requests answer 503 until the export is fixed
        logger.error(f"Message store unavailable at startup: {e}")

    app.state.store = store
    app.state.search = SearchEngine(store, scope=settings.SEARCH_SCOPE)
    app.state.attachments = await run_in_threadpool(build_attachment_index, settings)

    yield

    app.state.attachments.clear()
    store.close()


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> MessageStore:
    return request.app.state.store


def get_search_engine(request: Request) -> SearchEngine:
    return request.app.state.search


def get_attachments(request: Request) -> AttachmentIndex:
    return request.app.state.attachments


def get_conversation_key(conversation_id: str) -> tuple:
    """Decode the conversation id path parameter (DecodeError -> 404)."""
    return decode_conversation_id(conversation_id)


class AttachmentFileResponse(FileResponse):
    """
    FileResponse that notices a client going away before the last body
    chunk was sent, logs it as TransferAborted and counts it.

    The real receive channel is watched by a listener task; the parent
    response only sees a disconnect through it.
    """

    async def __call__(self, scope, receive, send) -> None:
        send_file = super().__call__
        disconnected = anyio.Event()
        finished = False
        aborted = False

        async def receive_disconnect():
            await disconnected.wait()
            return {"type": "http.disconnect"}

        async def tracked_send(message) -> None:
            nonlocal finished
            await send(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                finished = True

        async with anyio.create_task_group() as task_group:

            async def listen_for_disconnect() -> None:
                nonlocal aborted
                while True:
                    message = await receive()
                    if message["type"] == "http.disconnect":
                        break
                disconnected.set()
                if not finished:
                    aborted = True
                    task_group.cancel_scope.cancel()

            task_group.start_soon(listen_for_disconnect)
            try:
                await send_file(scope, receive_disconnect, tracked_send)
            except (ClientDisconnect, ConnectionError):
                aborted = True
            task_group.cancel_scope.cancel()

        if aborted and not finished:
            logger.warning(str(TransferAborted(str(self.path), reason="client disconnected")))
            record_attachment_outcome("aborted")


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
def health_ready(response: Response, store: MessageStore = Depends(get_store)) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the message store is open and
    has the messages table. Otherwise returns 503.
    """
    if not store.check_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Message store not readable"
        )
    return HealthResponse(status="ready")


@router.get("/api/config", response_model=ViewerConfigResponse)
def viewer_config(settings: Settings = Depends(get_app_settings)) -> ViewerConfigResponse:
    """Paging and search parameters a viewer needs to drive its window."""
    return ViewerConfigResponse(
        page_batch_size=settings.PAGE_BATCH_SIZE,
        max_page_size=settings.MAX_PAGE_SIZE,
        near_top_threshold_px=settings.NEAR_TOP_THRESHOLD_PX,
        search_scope=settings.SEARCH_SCOPE,
    )


# =============================================================================
# Conversation Routes
# =============================================================================

@router.get("/api/chats", response_model=list[ConversationResponse])
def list_chats(store: MessageStore = Depends(get_store)) -> list[ConversationResponse]:
    """
    List conversations grouped by (contact, source_file), most recent first.
    Rows without a contact name are not listed.
    """
    conversations = store.list_conversations()
    logger.info(f"GET /api/chats: returned {len(conversations)} conversations")
    return [ConversationResponse.from_conversation(c) for c in conversations]


@router.get(
    "/api/conversations/{conversation_id}/messages",
    response_model=MessagesPageResponse,
    responses={404: {"model": ErrorResponse, "description": "Conversation not found"}},
)
def list_messages(
    conversation_id: str,
    limit: Annotated[Optional[int], Query(ge=1, description="Messages per page (default PAGE_BATCH_SIZE)")] = None,
    offset: Annotated[Optional[int], Query(ge=0, description="Messages to skip; omit for the latest page")] = None,
    key: tuple = Depends(get_conversation_key),
    store: MessageStore = Depends(get_store),
    attachments: AttachmentIndex = Depends(get_attachments),
    settings: Settings = Depends(get_app_settings),
) -> MessagesPageResponse:
    """
    Page through a conversation in ascending id order.

    Without `offset` the latest page is returned, which is how a viewer
    opens a conversation. Older pages are requested with decreasing offsets.
    """
    contact, source_file = key
    limit = limit or settings.PAGE_BATCH_SIZE
    if limit > settings.MAX_PAGE_SIZE:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"limit must be at most {settings.MAX_PAGE_SIZE}"
        )

    total = store.count_messages(contact, source_file)
    if total == 0:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="conversation not found")

    if offset is None:
        offset = initial_offset(total, limit)

    messages = store.get_messages(contact, source_file, limit, offset)
    data = [MessageResponse.from_message(m, attachments) for m in messages]

    logger.info(
        f"GET messages: returned {len(data)} of {total} messages (limit={limit}, offset={offset})"
    )
    return MessagesPageResponse(
        conversation_id=conversation_id,
        data=data,
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + limit < total,
        has_older=offset > 0,
    )


@router.get("/api/conversations/{conversation_id}/search", response_model=SearchResponse)
async def search_conversation(
    conversation_id: str,
    q: Annotated[str, Query(min_length=1, description="Substring to find (case-insensitive)")],
    offset: Annotated[Optional[int], Query(ge=0, description="Start of the loaded window (window scope only)")] = None,
    key: tuple = Depends(get_conversation_key),
    store: MessageStore = Depends(get_store),
    engine: SearchEngine = Depends(get_search_engine),
    settings: Settings = Depends(get_app_settings),
) -> SearchResponse:
    """
    Search message text inside a conversation.

    The deployment's SEARCH_SCOPE decides whether the whole conversation or
    only the loaded window (messages from `offset` to the end) is searched.
    """
    contact, source_file = key

    loaded = None
    if engine.scope == SCOPE_WINDOW:
        total = await run_in_threadpool(store.count_messages, contact, source_file)
        if offset is None:
            offset = initial_offset(total, settings.PAGE_BATCH_SIZE)
        loaded = await run_in_threadpool(
            store.get_messages, contact, source_file, max(0, total - offset), offset
        )

    message_ids = await engine.search(contact, source_file, q, loaded=loaded)
    return SearchResponse(
        conversation_id=conversation_id,
        q=q,
        scope=engine.scope,
        message_ids=message_ids,
    )


@router.get(
    "/api/conversations/{conversation_id}/messages/{message_id}/index",
    response_model=MessageIndexResponse,
    responses={404: {"model": ErrorResponse, "description": "Message not found"}},
)
async def message_index(
    conversation_id: str,
    message_id: int,
    key: tuple = Depends(get_conversation_key),
    engine: SearchEngine = Depends(get_search_engine),
    settings: Settings = Depends(get_app_settings),
) -> MessageIndexResponse:
    """
    Position of a message in its conversation, and the window offset a
    viewer has to reach (loading older pages) to render it.
    """
    contact, source_file = key
    location = await engine.locate(contact, source_file, message_id, settings.PAGE_BATCH_SIZE)
    if location is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="message not found")
    return MessageIndexResponse(
        message_id=location.message_id,
        index=location.index,
        window_offset=location.window_offset,
    )


# =============================================================================
# Attachment Routes
# =============================================================================

@router.get(
    "/api/attachments/{identifier}",
    responses={404: {"model": ErrorResponse, "description": "Attachment not found"}},
)
def get_attachment(
    identifier: str,
    request: Request,
    attachments: AttachmentIndex = Depends(get_attachments),
):
    """
    Stream an attachment by identifier.

    Tried in order: exact file name in the media folder, the base name /
    UUID index, then any indexed name containing the identifier.
    """
    path = attachments.find_exact(identifier)
    matched_by = "direct"
    if path is None:
        found = attachments.find(identifier)
        if found is not None:
            path, matched_by = found
        else:
            path = attachments.find_fragment(identifier)
            matched_by = MATCH_FRAGMENT

    if path is None:
        logger.warning(f"Attachment not found: {identifier!r}")
        record_attachment_outcome("not_found")
        log_attachment_data(request, identifier=identifier, result="not_found")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="attachment not found")

    result = "direct" if matched_by == "direct" else "indexed"
    logger.info(f"Serving attachment {identifier!r} ({matched_by}): {path.name}")
    record_attachment_outcome(result)
    log_attachment_data(request, identifier=identifier, result=result, file_name=path.name)
    return AttachmentFileResponse(path, media_type=guess_content_type(path))


@router.get(
    "/api/attachments/{identifier}/resolve",
    response_model=Optional[AttachmentResolutionResponse],
)
def resolve_attachment(
    identifier: str,
    attachments: AttachmentIndex = Depends(get_attachments),
) -> Optional[AttachmentResolutionResponse]:
    """Resolve a stored attachment reference; null when the media is unavailable."""
    resolved = attachments.resolve(identifier)
    if resolved is None:
        return None
    return AttachmentResolutionResponse(url=resolved.url, inferred_kind=resolved.inferred_kind)


@router.post(
    "/api/attachments/reindex",
    response_model=ReindexResponse,
    responses={409: {"model": ErrorResponse, "description": "No media folder configured"}},
)
async def reindex_attachments(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> ReindexResponse:
    """
    Rebuild the attachment index from ATTACHMENTS_ROOT.

    The previous index is torn down and every display URL it issued is
    revoked.
    """
    if not settings.ATTACHMENTS_ROOT or not Path(settings.ATTACHMENTS_ROOT).is_dir():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="ATTACHMENTS_ROOT is not configured or not a directory"
        )

    new_index = await run_in_threadpool(build_attachment_index, settings)
    old_index = request.app.state.attachments
    request.app.state.attachments = new_index
    revoked = old_index.clear()

    return ReindexResponse(files_indexed=len(new_index), urls_revoked=revoked)


@router.get("/api/media/{token}", responses={404: {"model": ErrorResponse}})
def get_media(token: str, attachments: AttachmentIndex = Depends(get_attachments)):
    """Stream the file behind a display URL issued by the attachment index."""
    path = attachments.open_token(token)
    if path is None or not path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="media not found")
    return AttachmentFileResponse(path, media_type=guess_content_type(path))


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Error Handlers
# =============================================================================

async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    logger.error(f"Store unavailable: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": f"message store unavailable: {exc}"},
    )


async def decode_error_handler(request: Request, exc: DecodeError) -> JSONResponse:
    logger.info(f"Invalid conversation id: {exc}")
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": "conversation not found"},
    )


# =============================================================================
# Application Factory
# =============================================================================

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="WhatsApp Backup Viewer API",
        description="Read-only API for browsing WhatsApp backups exported to SQLite",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(StoreUnavailable, store_unavailable_handler)
    app.add_exception_handler(DecodeError, decode_error_handler)
    app.include_router(router)
    return app


app = create_app()
