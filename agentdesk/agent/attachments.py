"""User file attachments stored under a conversation directory."""

from __future__ import annotations

import logging
import mimetypes
import shutil
import uuid
from pathlib import Path

from ..llm.types import DocumentPart, FilePart, ImagePart, RequestPart, TextPart
from .messages import FileAttachment

logger = logging.getLogger(__name__)

__all__ = ["AttachmentError", "FileAttachmentManager", "guess_mime_type"]

DEFAULT_MIME_TYPE = "application/octet-stream"
_TEXT_LIKE = {
    "application/json",
    "application/xml",
    "application/x-yaml",
    "application/yaml",
    "application/toml",
    "application/javascript",
}


class AttachmentError(Exception):
    """An attachment could not be copied or read."""


def guess_mime_type(path: str | Path) -> str:
    """Guess the MIME type of *path* from its name."""
    mime_type, _encoding = mimetypes.guess_type(str(path))
    return mime_type or DEFAULT_MIME_TYPE


class FileAttachmentManager:
    """Copy files into ``attachments/<message-id>/`` and turn them into request parts."""

    def __init__(self, conversation_dir: str | Path) -> None:
        self.conversation_dir = Path(conversation_dir)

    def message_dir(self, message_id: str) -> Path:
        """Directory holding attachments of one message."""
        return self.conversation_dir / "attachments" / str(message_id)

    def copy_file(self, source: str | Path, message_id: str) -> FileAttachment:
        """Copy *source* next to the other attachments of *message_id*.

        Clashing names get ``" (n)"`` inserted before the extension, ``n``
        counting up from 1.
        """
        source_path = Path(source).expanduser()
        target_dir = self.message_dir(message_id)
        destination: Path | None = None
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            with source_path.open("rb") as src:
                destination = self._create_unique(target_dir, source_path.name)
                with destination.open("wb") as dst:
                    shutil.copyfileobj(src, dst)
            size = destination.stat().st_size
        except OSError as exc:
            if destination is not None:
                destination.unlink(missing_ok=True)
            raise AttachmentError(f"Cannot attach {source_path}: {exc}") from exc
        attachment = FileAttachment(
            id=str(uuid.uuid4()),
            path=destination,
            file_name=destination.name,
            mime_type=guess_mime_type(destination),
            file_size=size,
        )
        logger.debug("attached %s as %s", source_path, destination)
        return attachment

    @staticmethod
    def unique_file_name(file_name: str, directory: Path) -> str:
        """Return the first free name derived from *file_name* in *directory*."""
        base, dot, extension = file_name.partition(".")
        if not base:
            base, dot, extension = file_name, "", ""
        candidate = file_name
        counter = 1
        while (directory / candidate).exists():
            candidate = f"{base} ({counter}){dot}{extension}"
            counter += 1
        return candidate

    def _create_unique(self, directory: Path, file_name: str) -> Path:
        while True:
            destination = directory / self.unique_file_name(file_name, directory)
            try:
                destination.touch(exist_ok=False)
            except FileExistsError:
                continue
            return destination

    def delete_attachments(self, message_id: str) -> None:
        """Remove the attachment files of *message_id*."""
        target_dir = self.message_dir(message_id)
        if target_dir.exists():
            shutil.rmtree(target_dir)

    # ------------------------------------------------------------------
    def create_content_block(self, attachment: FileAttachment) -> RequestPart:
        """Read *attachment* and wrap it according to its MIME type."""
        try:
            data = attachment.path.read_bytes()
        except OSError as exc:
            raise AttachmentError(f"Cannot read {attachment.file_name}: {exc}") from exc
        mime_type = attachment.mime_type or DEFAULT_MIME_TYPE
        source = str(attachment.path)
        if mime_type.startswith("image/"):
            return ImagePart(media_type=mime_type, data=data, source_path=source)
        if mime_type == "application/pdf":
            return DocumentPart(
                media_type=mime_type,
                data=data,
                title=attachment.file_name,
                source_path=source,
            )
        if mime_type.startswith("text/") or mime_type in _TEXT_LIKE:
            try:
                text = data.decode("utf-8")
            except UnicodeDecodeError:
                logger.debug("%s is not UTF-8, sending as file", attachment.file_name)
            else:
                return TextPart(text=f"File: {attachment.file_name}\n\n{text}")
        return FilePart(
            media_type=mime_type,
            data=data,
            file_name=attachment.file_name,
            source_path=source,
        )
