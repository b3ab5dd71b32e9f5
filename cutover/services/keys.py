"""Canonical object-storage keys for relocated attachments.

Keys are a pure function of (institution, subject, kind, name, extension),
so relocating the same file twice always targets the same key.

Layout:
    institutions/{institution}/subjects/{subject}/{kind}/{subject}_{name or kind}.{ext}
"""

import mimetypes
import os
import re
import unicodedata
from typing import Optional

_SEGMENT_RE = re.compile(r"[^A-Za-z0-9._-]+")

UNASSIGNED_INSTITUTION = "unassigned"

CONTENT_TYPES = {
    "webp": "image/webp",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "pdf": "application/pdf",
}


def sanitize_segment(value: Optional[str], fallback: str = "x") -> str:
    """Reduce a path segment to [A-Za-z0-9._-], never empty, never '.' or '..'."""
    normalized = unicodedata.normalize("NFKD", str(value or ""))
    ascii_value = normalized.encode("ascii", "ignore").decode("ascii")
    sanitized = _SEGMENT_RE.sub("-", ascii_value).strip("-_.")
    return sanitized or fallback


def sanitize_extension(ext: Optional[str]) -> str:
    ext = (ext or "").lower().lstrip(".")
    return "".join(ch for ch in ext if ch.isalnum())


def canonical_key(
    subject_id: str,
    kind: str,
    extension: str,
    institution_id: Optional[str] = None,
    name: Optional[str] = None,
) -> str:
    """
    Build the canonical storage key of an attachment.

    Args:
        subject_id: Stable subject identifier
        kind: Attachment kind, e.g. "profile"
        extension: File extension, with or without the dot
        institution_id: Owning institution; subjects without one go under "unassigned"
        name: Sub-type distinguishing several attachments of one kind (document type)

    Returns:
        Key such as institutions/I9/subjects/S123/profile/S123_profile.webp
    """
    inst = sanitize_segment(institution_id, fallback=UNASSIGNED_INSTITUTION)
    sid = sanitize_segment(subject_id, fallback="subject")
    kind_segment = sanitize_segment(kind, fallback="file")
    suffix = sanitize_segment(name, fallback=kind_segment) if name else kind_segment
    ext = sanitize_extension(extension)
    filename = f"{sid}_{suffix}.{ext}" if ext else f"{sid}_{suffix}"
    return f"institutions/{inst}/subjects/{sid}/{kind_segment}/{filename}"


def content_type_for(filename: str) -> str:
    ext = os.path.splitext(filename)[1].lower().lstrip(".")
    if ext in CONTENT_TYPES:
        return CONTENT_TYPES[ext]
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


__all__ = ["canonical_key", "content_type_for", "sanitize_segment", "sanitize_extension"]
