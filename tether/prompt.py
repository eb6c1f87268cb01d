"""Prompt assembly: stdin merging, URL conversion and attached files."""

import ipaddress
import mimetypes
import re
import socket
import sys
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path

from . import fmt
from .history import InlineMedia, Text
from .report import ConfigError

MAX_RESPONSE_SIZE = 5 * 1024 * 1024  # 5 MB raw download cap
MAX_REDIRECTS = 10
FETCH_TIMEOUT = 10

URL_RE = re.compile(
    r"https?://(?:www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b"
    r"[-a-zA-Z0-9()@:%_+.~#?&/=]*"
)

LINK_FORMAT = '<link url="{url}" content-type="{content_type}">\n{body}\n</link>'
FILE_FORMAT = '<file path="{path}" content-type="{content_type}">\n{body}\n</file>'

HEADERS = {
    "User-Agent": "tether/url2text",
    "Accept": "text/markdown,text/html,text/plain,application/json,*/*;q=0.8",
}

_TEXT_APPLICATION_TYPES = frozenset(
    {
        "application/json",
        "application/xml",
        "application/xhtml+xml",
        "application/javascript",
        "application/x-javascript",
        "application/x-typescript",
        "application/x-python-code",
        "application/x-sh",
        "application/toml",
        "application/yaml",
        "application/rtf",
    }
)

_MEDIA_PREFIXES = ("image/", "audio/")
_MEDIA_TYPES = frozenset({"application/pdf"})


class FetchError(Exception):
    """Raised when a URL in the prompt cannot be converted to text."""


class _RedirectError(Exception):
    def __init__(self, url: str, code: int):
        self.url = url
        self.code = code


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        raise _RedirectError(newurl, code)


# --- Prompt text ---


def read_stdin() -> str | None:
    """Return piped stdin, or None when stdin is a terminal."""
    if sys.stdin is None or sys.stdin.isatty():
        return None
    data = sys.stdin.read()
    return data if data.strip() else None


def merge_prompt(stdin_text: str | None, flag_text: str | None) -> str | None:
    """Stdin comes first, then a blank line, then the command-line prompt."""
    pieces = [p.strip("\n") for p in (stdin_text, flag_text) if p and p.strip()]
    if not pieces:
        return None
    return "\n\n".join(pieces)


def remove_consecutive_empty_lines(text: str) -> str:
    lines = [line.rstrip(" ") for line in text.split("\n")]
    return re.sub(r"\n{2,}", "\n", "\n".join(lines))


# --- URL conversion ---


def _check_url_safety(url: str) -> str | None:
    """Return an error string if the URL has a bad scheme or targets a private address."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return f"url scheme {parsed.scheme!r} is not allowed, must be http or https"
    hostname = parsed.hostname
    if not hostname:
        return "could not parse hostname from url"
    try:
        infos = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except socket.gaierror as e:
        return f"could not resolve hostname {hostname!r}: {e}"
    for family, _, _, _, sockaddr in infos:
        addr = ipaddress.ip_address(sockaddr[0])
        if (
            addr.is_private
            or addr.is_loopback
            or addr.is_link_local
            or addr.is_reserved
        ):
            return f"url resolves to private/internal address ({addr}), blocked for security"
    return None


def _decode_response(data: bytes, content_type: str | None) -> str:
    """Decode response bytes, using the charset from Content-Type if present."""
    charset = None
    if content_type:
        for part in content_type.split(";"):
            part = part.strip()
            if part.lower().startswith("charset="):
                charset = part.split("=", 1)[1].strip().strip("\"'")
                break

    for encoding in [charset, "utf-8"]:
        if encoding is None:
            continue
        try:
            return data.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return data.decode("latin-1")


def _open(url: str, timeout: float):
    opener = urllib.request.build_opener(_NoRedirectHandler)
    current_url = url
    for _ in range(MAX_REDIRECTS + 1):
        err = _check_url_safety(current_url)
        if err:
            raise FetchError(err)
        req = urllib.request.Request(current_url, headers=HEADERS)
        try:
            return opener.open(req, timeout=timeout)
        except _RedirectError as r:
            current_url = urllib.parse.urljoin(current_url, r.url)
        except urllib.error.HTTPError as e:
            raise FetchError(f"HTTP error {e.code} from url: {url}") from e
        except (urllib.error.URLError, OSError) as e:
            raise FetchError(f"failed to fetch contents from url: {e}") from e
    raise FetchError(f"too many redirects (limit is {MAX_REDIRECTS})")


def url_to_text(url: str, timeout: float = FETCH_TIMEOUT) -> str:
    """Fetch ``url`` and wrap its text representation in a ``<link>`` block."""
    resp = _open(url, timeout)
    try:
        content_type = resp.headers.get("Content-Type", "")
        mime = content_type.split(";")[0].strip().lower()
        if not (mime.startswith("text/") or mime == "application/json"):
            raise FetchError(f"content type '{content_type}' not supported for url: {url}")
        try:
            data = resp.read(MAX_RESPONSE_SIZE + 1)
        except OSError as e:
            raise FetchError(f"failed to read '{content_type}' document from {url}: {e}")
        if len(data) > MAX_RESPONSE_SIZE:
            raise FetchError(f"response too large ({len(data)} bytes, limit is 5MB)")
        body = _decode_response(data, content_type)
    finally:
        resp.close()

    if mime == "text/html":
        from html_to_markdown import convert

        try:
            body = convert(body)
        except Exception as e:
            raise FetchError(f"failed to convert HTML from {url}: {e}") from e
    if mime != "application/json":
        body = remove_consecutive_empty_lines(body)
    return LINK_FORMAT.format(url=url, content_type=content_type, body=body.strip())


def convert_urls(prompt: str, timeout: float = FETCH_TIMEOUT, verbose: bool = False) -> str:
    """Replace every http(s) URL in the prompt with its fetched text.

    URLs that cannot be fetched are left as they are, with a warning.
    """
    for url in URL_RE.findall(prompt):
        if verbose:
            fmt.info(f"fetching from url: {url}")
        try:
            converted = url_to_text(url, timeout)
        except FetchError as e:
            fmt.warning(str(e))
            continue
        prompt = prompt.replace(url, converted + "\n", 1)
    return prompt


# --- Attached files ---


def parse_mime_overrides(values: list[str]) -> dict[str, str]:
    """Parse ``.ext:mime/type`` flag values."""
    overrides: dict[str, str] = {}
    for value in values:
        ext, sep, mime = value.partition(":")
        if not sep or not ext.strip() or "/" not in mime:
            raise ConfigError(
                f"invalid mime type override {value!r}: expected '.ext:type/subtype'"
            )
        ext = ext.strip().lower()
        if not ext.startswith("."):
            ext = "." + ext
        overrides[ext] = mime.strip()
    return overrides


def detect_mime_type(path: Path, data: bytes, overrides: dict[str, str]) -> str:
    ext = path.suffix.lower()
    if ext in overrides:
        return overrides[ext]
    guessed, _ = mimetypes.guess_type(path.name)
    if guessed:
        return guessed
    if b"\x00" in data[:8192]:
        return "application/octet-stream"
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return "application/octet-stream"
    return "text/plain"


def _is_text(mime: str) -> bool:
    return mime.startswith("text/") or mime in _TEXT_APPLICATION_TYPES


def _expand(paths: list[str]) -> list[Path]:
    files: list[Path] = []
    for raw in paths:
        p = Path(raw).expanduser()
        if p.is_dir():
            for child in sorted(p.rglob("*")):
                rel = child.relative_to(p)
                if child.is_file() and not any(
                    part.startswith(".") for part in rel.parts
                ):
                    files.append(child)
        elif p.is_file():
            files.append(p)
        else:
            raise ConfigError(f"no such file or directory: {raw}")
    return files


def load_attachments(
    paths: list[str], overrides: dict[str, str] | None = None
) -> list:
    """Turn attached files into history parts.

    Text-like files become Text parts; images, audio and PDFs become
    InlineMedia parts. Anything else is rejected.
    """
    overrides = overrides or {}
    parts: list = []
    for path in _expand(paths):
        try:
            data = path.read_bytes()
        except OSError as e:
            raise ConfigError(f"cannot read file {path}: {e}") from e
        mime = detect_mime_type(path, data, overrides)
        if _is_text(mime):
            body = _decode_response(data, None)
            parts.append(
                Text(FILE_FORMAT.format(path=path, content_type=mime, body=body))
            )
        elif mime.startswith(_MEDIA_PREFIXES) or mime in _MEDIA_TYPES:
            parts.append(InlineMedia(data, mime))
        else:
            raise ConfigError(f"unsupported file type {mime!r}: {path}")
    return parts
