"""Streaming model client built on LiteLLM.

Turns a streamed chat completion into a flat sequence of typed increments
that the stream classifier consumes one at a time.
"""

import base64
import json
import uuid
from dataclasses import dataclass

from . import fmt
from .report import AgentError, StreamError

PCM_SPEECH_MIME = "audio/L16;codec=pcm;rate=24000"

# Finish reasons that mean "the turn ended normally" for our purposes.
_STOP_REASONS = {"stop", "tool_calls", "function_call"}


@dataclass
class TextDelta:
    text: str


@dataclass
class ThoughtDelta:
    text: str


@dataclass
class MediaDelta:
    data: bytes
    mime_type: str


@dataclass
class FunctionCallDelta:
    name: str
    args: dict
    call_id: str = ""
    continuation_token: str | None = None
    invalid_arguments: str | None = None


@dataclass
class Finish:
    reason: str


@dataclass
class Usage:
    prompt: int = 0
    completion: int = 0
    thoughts: int = 0
    cached: int = 0
    total: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "prompt": self.prompt,
            "completion": self.completion,
            "thoughts": self.thoughts,
            "cached": self.cached,
            "total": self.total,
        }

    def describe(self) -> str:
        pieces = [f"{k}: {v}" for k, v in self.as_dict().items() if v]
        return ", ".join(pieces)


@dataclass
class ModelVersion:
    name: str


def normalize_finish_reason(reason: str | None) -> str | None:
    if reason is None:
        return None
    reason = str(reason)
    if reason.lower() in _STOP_REASONS:
        return "stop"
    return reason


def resolve_model(
    provider: str, model_id: str, base_url: str | None, api_key: str | None
) -> tuple[str, dict]:
    """Map provider + model id to a LiteLLM model string and call kwargs."""
    if provider == "lmstudio":
        model_str = f"openai/{model_id}"
        kwargs = {
            "api_base": f"{base_url or 'http://127.0.0.1:1234'}/v1",
            "api_key": "lm-studio",
        }
    elif provider == "huggingface":
        bare_id = model_id.removeprefix("huggingface/")
        model_str = f"huggingface/{bare_id}"
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    elif provider == "openrouter":
        # Only strip the prefix when the LiteLLM "openrouter/" prefix was
        # doubled; org names like "openrouter/free" stay intact.
        bare_id = (
            model_id[len("openrouter/") :]
            if model_id.startswith("openrouter/openrouter/")
            else model_id
        )
        model_str = f"openrouter/{bare_id}"
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    elif provider == "gemini":
        model_str = f"gemini/{model_id.removeprefix('gemini/')}"
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    else:
        raise AgentError(f"unknown provider {provider!r}")
    return model_str, kwargs


def _get(obj, key, default=None):
    """Read a field from a LiteLLM object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def parse_data_url(url: str) -> tuple[bytes, str] | None:
    """Decode a ``data:<mime>;base64,<payload>`` URL."""
    if not url or not url.startswith("data:") or "," not in url:
        return None
    header, payload = url[5:].split(",", 1)
    params = header.split(";")
    mime = params[0] or "application/octet-stream"
    if "base64" not in params[1:]:
        return None
    try:
        return base64.b64decode(payload), mime
    except ValueError:
        return None


class ModelClient:
    """Stream chat completions through LiteLLM."""

    def __init__(
        self,
        provider: str,
        model_id: str,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        verbose: bool = False,
    ):
        self.provider = provider
        self.model_id = model_id
        self.model_str, self._call_kwargs = resolve_model(
            provider, model_id, base_url, api_key
        )
        self.verbose = verbose

    def stream_generate(self, messages: list, tools: list | None, options: dict):
        """Start a streamed completion and return a lazy iterator of increments.

        ``options`` may carry temperature, top_p, seed, max_output_tokens and
        include_thoughts, plus tool_choice, modalities and audio for image or
        speech output. Failures to start the stream raise StreamError
        immediately; failures while iterating are raised from the iterator.
        """
        import litellm

        litellm.suppress_debug_info = True

        completion_kwargs = dict(
            model=self.model_str,
            messages=messages,
            stream=True,
            stream_options={"include_usage": True},
            **self._call_kwargs,
        )
        if tools:
            completion_kwargs["tools"] = tools
            completion_kwargs["tool_choice"] = options.get("tool_choice") or "auto"
        if options.get("max_output_tokens") is not None:
            completion_kwargs["max_tokens"] = options["max_output_tokens"]
        for key in ("temperature", "top_p", "seed"):
            if options.get(key) is not None:
                completion_kwargs[key] = options[key]
        if options.get("modalities"):
            completion_kwargs["modalities"] = options["modalities"]
        if options.get("audio"):
            completion_kwargs["audio"] = options["audio"]
        if options.get("include_thoughts"):
            completion_kwargs["reasoning_effort"] = options.get(
                "reasoning_effort", "medium"
            )

        if self.verbose:
            extras = [
                f"{k}={completion_kwargs[k]}"
                for k in ("temperature", "top_p", "seed", "max_tokens")
                if k in completion_kwargs
            ]
            extra_str = " with " + ", ".join(extras) if extras else ""
            fmt.model_info(f"Calling model {self.model_str}{extra_str}")

        try:
            response = litellm.completion(**completion_kwargs)
        except Exception as e:
            raise StreamError(f"LLM call failed: {e}") from e

        return iter_increments(response)


def iter_increments(chunks):
    """Translate raw streamed chunks into increments.

    Tool-call fragments are accumulated per index and emitted whole. The
    finish signal is held back until the raw stream is drained so that a
    trailing usage-only chunk is still reported.
    """
    calls: dict[int, dict] = {}
    finish_reason = None
    model_reported = False

    try:
        for chunk in chunks:
            model = _get(chunk, "model")
            if model and not model_reported:
                model_reported = True
                yield ModelVersion(model)

            usage = _get(chunk, "usage")
            if usage:
                yield _usage_from(usage)

            for choice in _get(chunk, "choices") or []:
                delta = _get(choice, "delta")
                if delta is not None:
                    yield from _delta_increments(delta, calls)
                reason = _get(choice, "finish_reason")
                if reason:
                    finish_reason = reason
                    yield from _flush_calls(calls)
    except AgentError:
        raise
    except Exception as e:
        raise StreamError(f"stream iteration failed: {e}") from e

    yield from _flush_calls(calls)
    if finish_reason:
        yield Finish(normalize_finish_reason(finish_reason))


def _delta_increments(delta, calls: dict[int, dict]):
    reasoning = _get(delta, "reasoning_content")
    if reasoning:
        yield ThoughtDelta(reasoning)

    content = _get(delta, "content")
    if content:
        yield TextDelta(content)

    for image in _get(delta, "images") or []:
        url = _get(_get(image, "image_url"), "url") or _get(image, "url")
        decoded = parse_data_url(url)
        if decoded is not None:
            data, mime = decoded
            yield MediaDelta(data, mime)

    audio = _get(delta, "audio")
    audio_data = _get(audio, "data")
    if audio_data:
        try:
            yield MediaDelta(base64.b64decode(audio_data), PCM_SPEECH_MIME)
        except ValueError as e:
            raise StreamError(f"undecodable audio data in stream: {e}") from e

    for tc in _get(delta, "tool_calls") or []:
        index = _get(tc, "index") or 0
        slot = calls.setdefault(
            index, {"id": "", "name": "", "arguments": [], "token": None}
        )
        if _get(tc, "id"):
            slot["id"] = _get(tc, "id")
        fn = _get(tc, "function")
        if _get(fn, "name"):
            slot["name"] = _get(fn, "name")
        if _get(fn, "arguments"):
            slot["arguments"].append(_get(fn, "arguments"))
        extra = _get(tc, "provider_specific_fields") or {}
        token = _get(extra, "thought_signature")
        if token:
            slot["token"] = token


def _flush_calls(calls: dict[int, dict]):
    for index in sorted(calls):
        slot = calls[index]
        raw = "".join(slot["arguments"]).strip()
        args: dict = {}
        invalid = None
        if raw:
            try:
                decoded = json.loads(raw)
            except json.JSONDecodeError as e:
                invalid = f"invalid JSON in tool arguments: {e}"
            else:
                if isinstance(decoded, dict):
                    args = decoded
                else:
                    invalid = (
                        "tool arguments must be a JSON object, "
                        f"got {type(decoded).__name__}"
                    )
        yield FunctionCallDelta(
            name=slot["name"],
            args=args,
            call_id=slot["id"] or f"call_{uuid.uuid4().hex[:24]}",
            continuation_token=slot["token"],
            invalid_arguments=invalid,
        )
    calls.clear()


def _usage_from(usage) -> Usage:
    completion_details = _get(usage, "completion_tokens_details")
    prompt_details = _get(usage, "prompt_tokens_details")
    return Usage(
        prompt=_get(usage, "prompt_tokens") or 0,
        completion=_get(usage, "completion_tokens") or 0,
        thoughts=_get(completion_details, "reasoning_tokens") or 0,
        cached=_get(prompt_details, "cached_tokens") or 0,
        total=_get(usage, "total_tokens") or 0,
    )
