"""Inline media handling: image rendering, speech conversion, file persistence."""

import io
import mimetypes
import os
import tempfile
import uuid
import wave
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.style import Style
from rich.text import Text

from . import fmt
from .report import AgentError, UnsupportedContentError

# mimetypes has no entry (or an odd one) for these on some platforms
_EXTENSIONS = {
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/ogg": ".ogg",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
}

MAX_RENDER_WIDTH = 80


def speech_codec_and_rate(mime_type: str) -> tuple[str, int]:
    """Extract codec and sample rate from an audio MIME type.

    ``audio/L16;codec=pcm;rate=24000`` -> ``("pcm", 24000)``. A missing or
    unparsable rate is returned as 0.
    """
    pieces = [p.strip() for p in mime_type.split(";")]
    subtype = pieces[0].split("/", 1)[-1].lower()
    params: dict[str, str] = {}
    for piece in pieces[1:]:
        if "=" in piece:
            k, v = piece.split("=", 1)
            params[k.strip().lower()] = v.strip()

    codec = params.get("codec", "").lower()
    if not codec:
        codec = "pcm" if subtype in ("l16", "pcm") else subtype
    try:
        rate = int(params.get("rate", "0"))
    except ValueError:
        rate = 0
    return codec, rate


def pcm_to_wav(
    data: bytes, rate: int, channels: int = 1, sample_width: int = 2
) -> bytes:
    """Wrap raw little-endian PCM samples in a WAV container."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as w:
        w.setnchannels(channels)
        w.setsampwidth(sample_width)
        w.setframerate(rate)
        w.writeframes(data)
    return buf.getvalue()


def extension_for(mime_type: str) -> str:
    mime = mime_type.split(";")[0].strip().lower()
    if mime in _EXTENSIONS:
        return _EXTENSIONS[mime]
    return mimetypes.guess_extension(mime) or ".bin"


def gen_filepath(mime_type: str, kind: str, directory: str | None = None) -> Path:
    """Return a fresh file path for generated media of the given kind."""
    base = Path(directory).expanduser() if directory else Path(tempfile.gettempdir())
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return base / f"{kind}_{stamp}_{uuid.uuid4().hex[:8]}{extension_for(mime_type)}"


def save_bytes(data: bytes, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o640)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


def render_image(data: bytes, console: Console, max_width: int = MAX_RENDER_WIDTH):
    """Draw an image on the terminal with half-block characters.

    Each character cell shows two vertically stacked pixels: the upper one
    as foreground and the lower one as background color.
    """
    from PIL import Image

    with Image.open(io.BytesIO(data)) as img:
        img = img.convert("RGB")
        width = min(max_width, console.width or max_width, img.width)
        height = max(2, round(img.height * width / img.width))
        if height % 2:
            height += 1
        img = img.resize((width, height))
        pixels = img.load()

        for y in range(0, height, 2):
            row = Text()
            for x in range(width):
                top = "rgb({},{},{})".format(*pixels[x, y])
                bottom = "rgb({},{},{})".format(*pixels[x, y + 1])
                row.append("\u2580", style=Style.parse(f"{top} on {bottom}"))
            console.print(row)


class MediaHandler:
    """Route inline media parts to the terminal or to files."""

    def __init__(
        self,
        *,
        save_images: bool = False,
        save_images_dir: str | None = None,
        save_speech_dir: str | None = None,
        error_on_unsupported: bool = False,
        verbose: bool = False,
    ):
        self.save_images = save_images
        self.save_images_dir = save_images_dir
        self.save_speech_dir = save_speech_dir
        self.error_on_unsupported = error_on_unsupported
        self.verbose = verbose

    @property
    def saves_images(self) -> bool:
        return self.save_images or self.save_images_dir is not None

    def handle(self, data: bytes, mime_type: str) -> Path | None:
        """Handle one inline media part from the model stream.

        Returns the path of the written file, if any.
        """
        if mime_type.startswith("image/"):
            return self._image(data, mime_type)
        if mime_type.startswith("audio/"):
            return self._speech(data, mime_type)
        if self.error_on_unsupported:
            raise UnsupportedContentError(
                f"unsupported mime type of inline data: {mime_type}"
            )
        fmt.warning(f"Unsupported mime type of inline data: {mime_type}")
        return None

    def handle_tool_media(self, data: bytes, mime_type: str) -> Path | None:
        """Persist media returned by a remote tool when saving is configured."""
        if mime_type.startswith("image/"):
            return self._image(data, mime_type)
        if mime_type.startswith("audio/") and self.save_speech_dir is not None:
            codec, rate = speech_codec_and_rate(mime_type)
            if codec == "pcm" and rate > 0:
                data, mime_type = pcm_to_wav(data, rate), "audio/wav"
            return self._write(data, mime_type, "audio", self.save_speech_dir)
        return None

    def _image(self, data: bytes, mime_type: str) -> Path | None:
        if self.saves_images:
            return self._write(data, mime_type, "image", self.save_images_dir)
        if self.verbose:
            fmt.info(f"displaying image ({mime_type};{len(data)} bytes) on terminal")
        try:
            render_image(data, fmt.console())
        except Exception as e:
            raise AgentError(f"image display failed: {e}") from e
        return None

    def _speech(self, data: bytes, mime_type: str) -> Path:
        codec, rate = speech_codec_and_rate(mime_type)
        if codec != "pcm" or rate <= 0:
            raise UnsupportedContentError(
                f"unsupported speech with codec: {codec} and rate: {rate}"
            )
        try:
            converted = pcm_to_wav(data, rate)
        except (wave.Error, ValueError) as e:
            raise AgentError(f"failed to convert speech from {codec} to wav: {e}") from e
        return self._write(converted, "audio/wav", "audio", self.save_speech_dir)

    def _write(
        self, data: bytes, mime_type: str, kind: str, directory: str | None
    ) -> Path:
        path = gen_filepath(mime_type, kind, directory)
        if self.verbose:
            fmt.info(f"saving {kind} file ({mime_type};{len(data)} bytes) to: {path}")
        try:
            save_bytes(data, path)
        except OSError as e:
            raise AgentError(f"saving {kind} file failed: {e}") from e
        fmt.saved_file("speech" if kind == "audio" else kind, str(path))
        return path
