"""
Attachment resolution against a user supplied media folder.

WhatsApp exports reference media loosely: the stored reference may be a bare
UUID, a UUID with the wrong extension, or a full file name, while the file on
disk usually looks like

    "2025-10-29 18 17 33 - Contact - Caption - 72a52c56-5494-40a4-9d26-35acf057c8a2.jpg"

The index keys every file by its lowercase base name (extension stripped) and
by the UUID embedded in that name. Lookups try the exact base name first and
the UUID second.
"""

import logging
import mimetypes
import secrets
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional, Set, Tuple

from wa_viewer.utils import extract_uuid, get_extension, strip_extension

logger = logging.getLogger(__name__)

IMAGE = "image"
VIDEO = "video"
AUDIO = "audio"
DOCUMENT = "document"
UNKNOWN = "unknown"

# Used only when no content type is known for the file
EXTENSION_KINDS = {
    "jpg": IMAGE,
    "jpeg": IMAGE,
    "png": IMAGE,
    "webp": IMAGE,
    "gif": IMAGE,
    "mp4": VIDEO,
    "mov": VIDEO,
    "mkv": VIDEO,
    "webm": VIDEO,
    "mp3": AUDIO,
    "wav": AUDIO,
    "ogg": AUDIO,
    "m4a": AUDIO,
    "opus": AUDIO,
    "pdf": DOCUMENT,
}

MATCH_BASE_NAME = "base_name"
MATCH_UUID = "uuid"
MATCH_FRAGMENT = "fragment"


def guess_content_type(path: Path) -> Optional[str]:
    content_type, _ = mimetypes.guess_type(path.name)
    return content_type


def infer_media_kind(name: str, content_type: Optional[str]) -> str:
    """
    Media kind used to pick a preview widget.

    This is never the stored kind label, which is always shown verbatim.
    """
    if content_type:
        mime = content_type.lower()
        if mime.startswith("image/"):
            return IMAGE
        if mime.startswith("video/"):
            return VIDEO
        if mime.startswith("audio/"):
            return AUDIO
        if "pdf" in mime or "document" in mime:
            return DOCUMENT
        return UNKNOWN
    return EXTENSION_KINDS.get(get_extension(name), UNKNOWN)


@dataclass(frozen=True)
class ResolvedAttachment:
    path: Path
    url: str
    content_type: Optional[str]
    inferred_kind: str
    matched_by: str

    @property
    def name(self) -> str:
        return self.path.name


class AttachmentIndex:
    """
    Index of one media folder.

    Resolving a reference issues a display URL owned by the index. clear()
    revokes every issued URL; to switch folders, build a new index and clear
    the old one.
    """

    def __init__(self, url_prefix: str = "/api/media", root: Optional[Path] = None):
        self.url_prefix = url_prefix.rstrip("/")
        self.root = Path(root).resolve() if root is not None else None
        self._by_base_name: Dict[str, Path] = {}
        self._by_uuid: Dict[str, Path] = {}
        self._files: Set[Path] = set()
        self._tokens: Dict[str, Path] = {}
        self._token_by_path: Dict[Path, str] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_folder(cls, root, url_prefix: str = "/api/media") -> "AttachmentIndex":
        """
        Build an index from every file under `root` (recursively).

        Raises:
            NotADirectoryError: if root is not a directory
        """
        root = Path(root)
        if not root.is_dir():
            raise NotADirectoryError(f"Attachments folder not found: {root}")

        index = cls(url_prefix=url_prefix, root=root)
        index.add_files(p for p in root.rglob("*") if p.is_file())
        return index

    def add_files(self, files: Iterable) -> int:
        """
        Index a collection of files.

        Files are indexed in sorted name order. When two files share a key,
        the first one keeps it.

        Returns:
            Number of files indexed
        """
        paths = sorted((Path(f) for f in files), key=lambda p: (p.name, str(p)))
        logger.info(f"Indexing {len(paths)} attachment files")

        for path in paths:
            self._files.add(path)
            base_name = strip_extension(path.name).lower()
            self._by_base_name.setdefault(base_name, path)

            uuid = extract_uuid(base_name)
            if uuid:
                self._by_uuid.setdefault(uuid, path)
                logger.debug(f"Indexed UUID: {uuid} -> {path.name}")
            else:
                logger.debug(f"Indexed base name: {base_name} -> {path.name}")

        logger.info(
            f"Indexed {len(self._by_base_name)} base names and {len(self._by_uuid)} UUIDs"
        )
        return len(paths)

    def __len__(self) -> int:
        """Number of files indexed, including those whose keys were already taken."""
        return len(self._files)

    @property
    def is_empty(self) -> bool:
        return not self._files

    def indexed_names(self) -> list:
        return sorted(self._by_base_name)

    # =========================================================================
    # Lookup
    # =========================================================================

    def find(self, reference: str) -> Optional[Tuple[Path, str]]:
        """
        Look up the file for a stored attachment reference.

        Returns:
            (path, matched_by) or None when nothing matches
        """
        if not reference:
            return None

        base_name = strip_extension(reference).lower()

        path = self._by_base_name.get(base_name)
        if path is not None:
            logger.debug(f"Attachment found by base name: {base_name} -> {path.name}")
            return path, MATCH_BASE_NAME

        uuid = extract_uuid(base_name)
        if uuid:
            path = self._by_uuid.get(uuid)
            if path is not None:
                logger.debug(f"Attachment found by UUID: {uuid} -> {path.name}")
                return path, MATCH_UUID

        logger.info(
            f"Attachment not found: {reference!r} (base name {base_name!r}, uuid {uuid or 'none'})"
        )
        return None

    def find_exact(self, file_name: str) -> Optional[Path]:
        """
        Direct lookup of `file_name` inside the indexed folder.

        Names containing path separators or pointing outside the folder never
        match.
        """
        if self.root is None or not file_name:
            return None
        if "/" in file_name or "\\" in file_name or file_name in (".", ".."):
            return None

        try:
            candidate = (self.root / file_name).resolve()
            if candidate.parent != self.root or not candidate.is_file():
                return None
        except (OSError, ValueError) as e:
            # NUL bytes, over-long names
            logger.info(f"Unusable attachment file name {file_name!r}: {e}")
            return None
        return candidate

    def find_fragment(self, fragment: str) -> Optional[Path]:
        """
        First indexed file (in name order) whose base name contains the
        fragment, with or without its extension.
        """
        if not fragment:
            return None
        needles = {fragment.lower(), strip_extension(fragment).lower()}
        for base_name in sorted(self._by_base_name):
            if any(needle in base_name for needle in needles):
                return self._by_base_name[base_name]
        return None

    def resolve(self, reference: str) -> Optional[ResolvedAttachment]:
        """
        Resolve a reference to a displayable resource.

        Returns:
            ResolvedAttachment, or None when the media is not in the folder
        """
        found = self.find(reference)
        if found is None:
            return None

        path, matched_by = found
        content_type = guess_content_type(path)
        return ResolvedAttachment(
            path=path,
            url=f"{self.url_prefix}/{self._issue_token(path)}",
            content_type=content_type,
            inferred_kind=infer_media_kind(path.name, content_type),
            matched_by=matched_by,
        )

    # =========================================================================
    # Display URL ownership
    # =========================================================================

    def _issue_token(self, path: Path) -> str:
        with self._lock:
            token = self._token_by_path.get(path)
            if token is None:
                token = secrets.token_urlsafe(16)
                self._tokens[token] = path
                self._token_by_path[path] = token
            return token

    def open_token(self, token: str) -> Optional[Path]:
        """File behind an issued display URL, or None once revoked."""
        return self._tokens.get(token)

    @property
    def issued_count(self) -> int:
        return len(self._tokens)

    def clear(self) -> int:
        """
        Drop the index and revoke every issued display URL.

        Returns:
            Number of display URLs revoked
        """
        with self._lock:
            revoked = len(self._tokens)
            self._tokens.clear()
            self._token_by_path.clear()
            self._by_base_name.clear()
            self._by_uuid.clear()
            self._files.clear()
        logger.info(f"Attachment index cleared, {revoked} display URLs revoked")
        return revoked
