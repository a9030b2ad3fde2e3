"""Apply template merges to DOCX archives and plain-text sources."""

import io
import re
import zipfile
from typing import Any, Mapping

from docx.opc.oxml import parse_xml, serialize_part_xml
from docx.oxml.ns import qn

from .merge import merge

DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

# Parts carrying visible text; everything else is copied untouched.
_TEXT_PARTS = re.compile(r"^word/(document|header\d*|footer\d*|footnotes|endnotes)\.xml$")
_W_TEXT = qn("w:t")


def is_docx(data: bytes) -> bool:
    if not data.startswith(b"PK"):
        return False
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            return "word/document.xml" in zf.namelist()
    except zipfile.BadZipFile:
        return False


def _merge_part(blob: bytes, values: Mapping[str, Any], warnings: list[str]) -> bytes:
    root = parse_xml(blob)
    for node in root.iter(_W_TEXT):
        if not node.text:
            continue
        result = merge(node.text, values)
        warnings.extend(result.warnings)
        node.text = result.text
    return serialize_part_xml(root)


def merge_docx(template: bytes, values: Mapping[str, Any]) -> tuple[bytes, list[str]]:
    """Merge ``values`` into the text runs of a DOCX archive.

    Placeholders must sit inside a single ``<w:t>`` run; Word splits text
    across runs when formatting changes mid-token.
    """
    warnings: list[str] = []
    out = io.BytesIO()
    with zipfile.ZipFile(io.BytesIO(template)) as src, zipfile.ZipFile(out, "w", zipfile.ZIP_DEFLATED) as dst:
        for info in src.infolist():
            data = src.read(info.filename)
            if _TEXT_PARTS.match(info.filename):
                data = _merge_part(data, values, warnings)
            dst.writestr(info, data)
    return out.getvalue(), warnings


def merge_source(template: bytes, values: Mapping[str, Any]) -> tuple[bytes, str, str, list[str]]:
    """Merge a fetched template source.

    Returns the merged bytes, the artifact name, its content type and the
    unresolved placeholder warnings. Non-DOCX sources are merged as UTF-8 text.
    """
    if is_docx(template):
        data, warnings = merge_docx(template, values)
        return data, "merged.docx", DOCX_CONTENT_TYPE, warnings
    result = merge(template.decode("utf-8"), values)
    return result.text.encode("utf-8"), "merged.html", "text/html; charset=utf-8", result.warnings
