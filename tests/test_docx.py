import io
import zipfile

from doc_signing.execution.docx import DOCX_CONTENT_TYPE, is_docx, merge_docx, merge_source

DOCUMENT_XML = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<w:document xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main"><w:body>'
    '<w:p><w:r><w:t xml:space="preserve">Client: [CLIENT_NAME] &amp; {company}</w:t></w:r></w:p>'
    '<w:p><w:r><w:t>Ref {missing}</w:t></w:r></w:p>'
    "</w:body></w:document>"
)
FOOTER_XML = (
    '<w:ftr xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main">'
    "<w:p><w:r><w:t>Page for {company}</w:t></w:r></w:p></w:ftr>"
)
STYLES_XML = "<w:styles>{company}</w:styles>"


def _docx() -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("[Content_Types].xml", "<Types/>")
        zf.writestr("word/document.xml", DOCUMENT_XML)
        zf.writestr("word/footer1.xml", FOOTER_XML)
        zf.writestr("word/styles.xml", STYLES_XML)
    return buf.getvalue()


def _part(data: bytes, name: str) -> str:
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return zf.read(name).decode("utf-8")


def test_is_docx():
    assert is_docx(_docx())
    assert not is_docx(b"plain text [NAME]")
    assert not is_docx(b"PK-not-a-zip")


def test_merge_docx_rewrites_text_runs_with_escaping():
    merged, warnings = merge_docx(_docx(), {"client_name": "Ana <Ltd>", "company": "Acme"})
    document = _part(merged, "word/document.xml")
    assert "Client: Ana &lt;Ltd&gt; &amp; Acme" in document
    assert "Ref {missing}" in document
    assert warnings == ["{missing}"]
    assert "Page for Acme" in _part(merged, "word/footer1.xml")


def test_merge_docx_leaves_non_text_parts_untouched():
    merged, _ = merge_docx(_docx(), {"company": "Acme"})
    assert _part(merged, "word/styles.xml") == STYLES_XML
    assert _part(merged, "[Content_Types].xml") == "<Types/>"


def test_merge_source_picks_format():
    data, name, content_type, _ = merge_source(_docx(), {"company": "Acme"})
    assert name == "merged.docx"
    assert content_type == DOCX_CONTENT_TYPE
    assert is_docx(data)

    data, name, content_type, warnings = merge_source(b"<p>[NAME] {x}</p>", {"name": "Ana"})
    assert data == b"<p>Ana {x}</p>"
    assert name == "merged.html"
    assert content_type.startswith("text/html")
    assert warnings == ["{x}"]


def test_merge_docx_keeps_character_references_as_text():
    document = DOCUMENT_XML.replace("Ref {missing}", "A&#160;B [NAME]")
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("word/document.xml", document)
    merged, warnings = merge_docx(buf.getvalue(), {"name": "Ana"})
    text = _part(merged, "word/document.xml")
    assert "A\u00a0B Ana" in text
    assert "&amp;#160;" not in text
    assert "[CLIENT_NAME]" in text
    assert warnings == ["[CLIENT_NAME]", "{company}"]
