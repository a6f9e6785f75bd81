import pytest

from casedocs.content import (
    PayloadVerdict,
    check_payload,
    extension_for,
    extract_embedded_file_urls,
    filename_from_disposition,
    guess_content_type,
    is_allowed_content_type,
    sniff_payload,
)
from casedocs.errors import IntegrityRejected
from fakes import pdf_bytes


def test_sniff_accepts_real_pdf():
    assert sniff_payload(pdf_bytes(4096), content_type="application/pdf") is PayloadVerdict.FILE


def test_html_body_rejected_even_when_declared_pdf():
    body = b"<!DOCTYPE html><html><head><title>login</title></head>" + b" " * 2048
    assert sniff_payload(body, content_type="application/pdf") is PayloadVerdict.HTML
    with pytest.raises(IntegrityRejected) as excinfo:
        check_payload(body, content_type="application/pdf")
    assert "html" in str(excinfo.value)
    assert excinfo.value.size == len(body)


def test_html_marker_after_bom_and_whitespace():
    body = b"\xef\xbb\xbf\r\n  <html><body>expired</body></html>" + b"x" * 1000
    assert sniff_payload(body, content_type="application/octet-stream") is PayloadVerdict.HTML


def test_declared_html_rejected():
    body = b"plain looking text " * 100
    assert sniff_payload(body, content_type="text/html; charset=utf-8") is PayloadVerdict.HTML


def test_small_body_rejected():
    assert sniff_payload(pdf_bytes(100), content_type="application/pdf") is PayloadVerdict.TOO_SMALL
    # The threshold is configurable.
    assert sniff_payload(pdf_bytes(100), content_type="application/pdf", min_bytes=64) is (
        PayloadVerdict.FILE
    )


def test_error_text_without_magic_rejected():
    body = ("요청하신 파일을 찾을 수 없습니다. " * 40).encode("utf-8")
    assert 512 <= len(body) <= 4096
    assert (
        sniff_payload(body, content_type="application/octet-stream")
        is PayloadVerdict.ERROR_TEXT
    )


def test_allowed_content_types():
    assert is_allowed_content_type("application/pdf; charset=binary")
    assert is_allowed_content_type("IMAGE/JPEG")
    assert not is_allowed_content_type("text/html")
    assert not is_allowed_content_type(None)


@pytest.mark.parametrize(
    ("content_type", "filename", "category", "expected"),
    [
        ("application/pdf", None, "AP", "pdf"),
        ("application/octet-stream", "시세.xlsx", "RTR", "xlsx"),
        ("application/octet-stream", None, "RTR", "csv"),
        (None, None, "IMG", "jpg"),
        (None, None, "RS", "pdf"),
        (None, "photo.JPEG", None, "jpg"),
    ],
)
def test_extension_for(content_type, filename, category, expected):
    assert extension_for(content_type, filename=filename, category=category) == expected


def test_filename_from_disposition():
    assert filename_from_disposition('attachment; filename="report.pdf"') == "report.pdf"
    assert (
        filename_from_disposition("attachment; filename*=UTF-8''%EA%B0%90%EC%A0%95.pdf")
        == "감정.pdf"
    )
    assert filename_from_disposition("inline") is None
    assert filename_from_disposition(None) is None


def test_guess_content_type():
    assert guess_content_type(pdf_bytes(600)) == "application/pdf"
    assert guess_content_type(b"\x89PNG\r\n\x1a\n....") == "image/png"
    assert guess_content_type(b"a,b\n1,2\n", filename="rtr.csv") == "text/csv"
    assert guess_content_type(b"????") is None


def test_extract_embedded_file_urls():
    html = """
    <html><body>
      <iframe src="/files/appraisal.pdf"></iframe>
      <embed src="viewer/doc.hwp">
      <object data="javascript:void(0)"></object>
      <a href="/pa/paFile.php?idx=3&tp=D">download</a>
      <a href="/about">about</a>
      <script>var f = 'https://cdn.example.test/scan/reg.pdf?v=2';</script>
    </body></html>
    """
    urls = extract_embedded_file_urls(html, page_url="https://site.test/pa/paView.php?idx=3")

    assert urls[0] == "https://site.test/files/appraisal.pdf"
    assert "https://site.test/pa/viewer/doc.hwp" in urls
    assert "https://site.test/pa/paFile.php?idx=3&tp=D" in urls
    assert "https://cdn.example.test/scan/reg.pdf?v=2" in urls
    assert not any(u.endswith("/about") for u in urls)
    assert len(urls) == len(set(urls))


def test_malformed_embedded_urls_skipped():
    html = """
    <iframe src="http://[broken/scan.pdf"></iframe>
    <a href="http://[broken/file.pdf">file</a>
    <embed src="/files/ok.pdf">
    """
    urls = extract_embedded_file_urls(html, page_url="https://site.test/pa/paView.php?idx=3")

    assert urls == ["https://site.test/files/ok.pdf"]
