from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass
from xml.sax.saxutils import quoteattr

from app.core.errors import DocumentParseError


@dataclass(frozen=True)
class ParsedDocument:
    thumbnail: bytes | None = None
    notes: str | None = None


def parse_document(document: bytes) -> ParsedDocument:
    """Extract the embedded thumbnail and notes from a project document.

    Accepts either a bare ``<project>`` root or a ``<snapdata>`` envelope.
    The thumbnail is the text of ``<thumbnail>`` (normally a data URL).
    """

    try:
        root = ET.fromstring(document)
    except ET.ParseError as e:
        raise DocumentParseError(f"Malformed project document: {e}") from e

    project = root if root.tag == "project" else root.find("project")
    if project is None:
        return ParsedDocument()

    thumbnail = None
    thumb_el = project.find("thumbnail")
    if thumb_el is not None and (thumb_el.text or "").strip():
        thumbnail = thumb_el.text.strip().encode("utf-8")

    notes = None
    notes_el = project.find("notes")
    if notes_el is not None:
        notes = notes_el.text or ""

    return ParsedDocument(thumbnail=thumbnail, notes=notes)


def render_snapdata(document: bytes | None, assets: bytes | None, *, remix_id: int | None = None) -> str:
    """Envelope sent to a client opening a project.

    A ``remixID`` attribute is attached when someone other than the owner opens
    it, so a later save can record the remix.
    """

    head = "<snapdata>" if remix_id is None else f"<snapdata remixID={quoteattr(str(remix_id))}>"
    doc = document.decode("utf-8") if document is not None else "<project></project>"
    media = assets.decode("utf-8") if assets is not None else "<media></media>"
    return f"{head}{doc}{media}</snapdata>"
