"""Tests for tether.prompt: stdin merging, URL conversion, attachments."""

import io
from unittest.mock import MagicMock, patch

import pytest

from tether.history import InlineMedia, Text
from tether.prompt import (
    MAX_RESPONSE_SIZE,
    FetchError,
    _check_url_safety,
    convert_urls,
    detect_mime_type,
    load_attachments,
    merge_prompt,
    parse_mime_overrides,
    read_stdin,
    remove_consecutive_empty_lines,
    url_to_text,
)
from tether.report import ConfigError


def _mock_response(body: bytes, content_type="text/plain; charset=utf-8"):
    resp = MagicMock()
    resp.headers = {"Content-Type": content_type}
    resp.read.side_effect = lambda n=-1: body if n < 0 else body[:n]
    return resp


# =========================================================================
# Prompt text
# =========================================================================


class TestMergePrompt:
    def test_stdin_first(self):
        assert merge_prompt("piped data\n", "summarize") == "piped data\n\nsummarize"

    def test_flag_only(self):
        assert merge_prompt(None, "hello") == "hello"

    def test_stdin_only(self):
        assert merge_prompt("data", None) == "data"

    def test_nothing(self):
        assert merge_prompt(None, "  ") is None


class TestReadStdin:
    def test_tty_returns_none(self, monkeypatch):
        fake = MagicMock()
        fake.isatty.return_value = True
        monkeypatch.setattr("sys.stdin", fake)
        assert read_stdin() is None

    def test_piped(self, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("piped\n"))
        assert read_stdin() == "piped\n"

    def test_blank_pipe(self, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("\n\n"))
        assert read_stdin() is None


def test_remove_consecutive_empty_lines():
    assert remove_consecutive_empty_lines("a  \n\n\nb\n\nc") == "a\nb\nc"


# =========================================================================
# URL conversion
# =========================================================================


class TestCheckUrlSafety:
    def test_bad_scheme(self):
        assert "not allowed" in _check_url_safety("ftp://example.com/x")

    def test_loopback_blocked(self):
        assert "private/internal" in _check_url_safety("http://127.0.0.1/x")

    def test_public_ok(self):
        infos = [(2, 1, 6, "", ("93.184.216.34", 0))]
        with patch("socket.getaddrinfo", return_value=infos):
            assert _check_url_safety("https://example.com/") is None


class TestUrlToText:
    @pytest.fixture(autouse=True)
    def _safe(self):
        with patch("tether.prompt._check_url_safety", return_value=None):
            yield

    def _opener(self, resp):
        opener = MagicMock()
        opener.open.return_value = resp
        return patch("urllib.request.build_opener", return_value=opener)

    def test_plain_text_wrapped(self):
        with self._opener(_mock_response(b"hello\n\n\nworld")):
            out = url_to_text("https://example.com/a.txt")
        assert out == (
            '<link url="https://example.com/a.txt" '
            'content-type="text/plain; charset=utf-8">\nhello\nworld\n</link>'
        )

    def test_html_converted(self):
        html = b"<html><body><h1>Title</h1><p>Body text</p></body></html>"
        with self._opener(_mock_response(html, "text/html")):
            out = url_to_text("https://example.com/")
        assert "Title" in out
        assert "Body text" in out
        assert "<h1>" not in out

    def test_json_kept(self):
        with self._opener(_mock_response(b'{"a": 1}', "application/json")):
            out = url_to_text("https://example.com/api")
        assert '{"a": 1}' in out

    def test_binary_rejected(self):
        with self._opener(_mock_response(b"\x89PNG", "image/png")):
            with pytest.raises(FetchError, match="not supported"):
                url_to_text("https://example.com/x.png")

    def test_too_large(self):
        body = b"x" * (MAX_RESPONSE_SIZE + 10)
        with self._opener(_mock_response(body)):
            with pytest.raises(FetchError, match="too large"):
                url_to_text("https://example.com/big")


class TestConvertUrls:
    def test_replaces_urls(self):
        with patch("tether.prompt.url_to_text", return_value="<link>x</link>"):
            out = convert_urls("read https://example.com/doc please")
        assert out == "read <link>x</link>\n please"

    def test_failed_fetch_left_in_place(self, capsys):
        with patch("tether.prompt.url_to_text", side_effect=FetchError("HTTP error 404")):
            out = convert_urls("see https://example.com/missing")
        assert out == "see https://example.com/missing"
        assert "HTTP error 404" in capsys.readouterr().err

    def test_no_urls(self):
        assert convert_urls("nothing to fetch") == "nothing to fetch"


# =========================================================================
# Attachments
# =========================================================================


class TestMimeOverrides:
    def test_parse(self):
        assert parse_mime_overrides([".TS:text/typescript", "md:text/markdown"]) == {
            ".ts": "text/typescript",
            ".md": "text/markdown",
        }

    @pytest.mark.parametrize("value", ["nocolon", ".x:", ":text/plain", ".x:plain"])
    def test_invalid(self, value):
        with pytest.raises(ConfigError):
            parse_mime_overrides([value])

    def test_override_wins(self, tmp_path):
        p = tmp_path / "a.txt"
        assert detect_mime_type(p, b"x", {".txt": "text/markdown"}) == "text/markdown"

    def test_unknown_extension_sniffed(self, tmp_path):
        p = tmp_path / "notes.zzz"
        assert detect_mime_type(p, b"plain words", {}) == "text/plain"
        assert detect_mime_type(p, b"\x00\x01", {}) == "application/octet-stream"


class TestLoadAttachments:
    def test_text_file(self, tmp_path):
        p = tmp_path / "notes.txt"
        p.write_text("remember milk", encoding="utf-8")
        parts = load_attachments([str(p)])
        assert parts == [
            Text(f'<file path="{p}" content-type="text/plain">\nremember milk\n</file>')
        ]

    def test_image_is_media(self, tmp_path):
        p = tmp_path / "pic.png"
        p.write_bytes(b"\x89PNG\r\n")
        assert load_attachments([str(p)]) == [InlineMedia(b"\x89PNG\r\n", "image/png")]

    def test_pdf_is_media(self, tmp_path):
        p = tmp_path / "doc.pdf"
        p.write_bytes(b"%PDF-1.4")
        assert load_attachments([str(p)])[0].mime_type == "application/pdf"

    def test_directory_skips_hidden(self, tmp_path):
        (tmp_path / "a.txt").write_text("a", encoding="utf-8")
        (tmp_path / ".secret").write_text("s", encoding="utf-8")
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "config").write_text("c", encoding="utf-8")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b.txt").write_text("b", encoding="utf-8")
        parts = load_attachments([str(tmp_path)])
        assert len(parts) == 2
        assert "a.txt" in parts[0].text
        assert "b.txt" in parts[1].text

    def test_missing_path(self, tmp_path):
        with pytest.raises(ConfigError, match="no such file"):
            load_attachments([str(tmp_path / "nope")])

    def test_unsupported_binary(self, tmp_path):
        p = tmp_path / "blob.zzz"
        p.write_bytes(b"\x00\xff\x00")
        with pytest.raises(ConfigError, match="unsupported file type"):
            load_attachments([str(p)])
