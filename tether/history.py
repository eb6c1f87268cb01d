"""Conversation history: role-tagged turns of typed parts.

The history is the only state shared by the passes of one generation. It is
mutated by a single worker at a time, in stream order, and converted to chat
messages for the model client at the start of every pass.
"""

import base64
import json
from dataclasses import dataclass, field

import jsonschema

USER = "user"
MODEL = "model"


@dataclass
class Text:
    text: str


@dataclass
class Thought:
    text: str


@dataclass
class InlineMedia:
    data: bytes
    mime_type: str


@dataclass
class FunctionCall:
    name: str
    args: dict
    call_id: str = ""
    continuation_token: str | None = None


@dataclass
class FunctionResponse:
    name: str
    outcome: dict
    call_id: str = ""
    continuation_token: str | None = None
    # inline media returned with the result, sent right after it
    media: list = field(default_factory=list)


Part = Text | Thought | InlineMedia | FunctionCall | FunctionResponse


@dataclass
class Turn:
    role: str
    parts: list = field(default_factory=list)


def render_call(name: str, args: dict | None) -> str:
    """Canonical ``name(args)`` rendering with compact, key-sorted JSON."""
    encoded = json.dumps(
        args or {}, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )
    return f"{name}({encoded})"


def validate_arguments(args: dict, schema: dict | None) -> str | None:
    """Check call arguments against a declared parameter schema.

    Returns None when the arguments are acceptable (or no schema is known),
    otherwise a one-line description of the first violation.
    """
    if not schema:
        return None
    try:
        jsonschema.validate(instance=args, schema=schema)
    except jsonschema.ValidationError as e:
        location = "/".join(str(p) for p in e.absolute_path)
        if location:
            return f"invalid arguments at '{location}': {e.message}"
        return f"invalid arguments: {e.message}"
    except jsonschema.SchemaError as e:
        return f"tool declares an invalid parameter schema: {e.message}"
    return None


class History:
    """Append-only buffer of conversation turns."""

    def __init__(self, turns: list[Turn] | None = None):
        self.turns: list[Turn] = list(turns or [])

    def __len__(self) -> int:
        return len(self.turns)

    def last_turn(self) -> Turn | None:
        return self.turns[-1] if self.turns else None

    # -- user side -----------------------------------------------------------

    def _user_turn(self) -> Turn:
        last = self.last_turn()
        if last is not None and last.role == USER and not any(
            isinstance(p, FunctionResponse) for p in last.parts
        ):
            return last
        turn = Turn(USER)
        self.turns.append(turn)
        return turn

    def append_user_text(self, text: str) -> None:
        if text:
            self._user_turn().parts.append(Text(text))

    def append_user_media(self, media: InlineMedia) -> None:
        self._user_turn().parts.append(media)

    # -- model side ----------------------------------------------------------

    def append_model_text(self, text: str) -> None:
        """Append streamed model text, merging into a trailing Text part."""
        if not text:
            return
        last = self.last_turn()
        if last is None or last.role != MODEL:
            self.turns.append(Turn(MODEL, [Text(text)]))
            return
        if last.parts and isinstance(last.parts[-1], Text):
            last.parts[-1].text += text
        else:
            last.parts.append(Text(text))

    def append_function_call(self, call: FunctionCall) -> None:
        last = self.last_turn()
        if last is not None and last.role == MODEL:
            last.parts.append(call)
        else:
            self.turns.append(Turn(MODEL, [call]))

    def append_function_response(self, response: FunctionResponse) -> None:
        """Function responses always open a new user turn.

        Media attached to the response follows it as InlineMedia parts of
        the same turn.
        """
        self.turns.append(Turn(USER, [response, *response.media]))

    def ends_with_user_turn(self) -> bool:
        last = self.last_turn()
        return last is not None and last.role == USER

    # -- queries -------------------------------------------------------------

    def iter_parts(self):
        for turn in self.turns:
            yield from turn.parts

    def function_calls(self) -> list[FunctionCall]:
        return [p for p in self.iter_parts() if isinstance(p, FunctionCall)]

    def pending_calls(self) -> list[FunctionCall]:
        """Function calls that no later FunctionResponse answers yet."""
        pending: list[FunctionCall] = []
        for part in self.iter_parts():
            if isinstance(part, FunctionCall):
                pending.append(part)
            elif isinstance(part, FunctionResponse):
                for i, call in enumerate(pending):
                    if _answers(part, call):
                        del pending[i]
                        break
        return pending

    # -- conversion ----------------------------------------------------------

    def to_messages(self, system_prompt: str | None = None) -> list[dict]:
        """Convert the buffer to litellm chat messages."""
        messages: list[dict] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for turn in self.turns:
            if turn.role == MODEL:
                messages.append(_model_message(turn))
            else:
                messages.extend(_user_messages(turn))
        return messages


def _answers(response: FunctionResponse, call: FunctionCall) -> bool:
    if response.call_id and call.call_id:
        return response.call_id == call.call_id
    return response.name == call.name


def _model_message(turn: Turn) -> dict:
    text = "".join(p.text for p in turn.parts if isinstance(p, Text))
    msg: dict = {"role": "assistant", "content": text or None}
    tool_calls = []
    for part in turn.parts:
        if not isinstance(part, FunctionCall):
            continue
        tc: dict = {
            "id": part.call_id,
            "type": "function",
            "function": {
                "name": part.name,
                "arguments": json.dumps(part.args, ensure_ascii=False),
            },
        }
        if part.continuation_token:
            tc["provider_specific_fields"] = {
                "thought_signature": part.continuation_token
            }
        tool_calls.append(tc)
    if tool_calls:
        msg["tool_calls"] = tool_calls
    return msg


def _user_messages(turn: Turn) -> list[dict]:
    messages: list[dict] = []
    content: list[dict] = []
    for part in turn.parts:
        if isinstance(part, FunctionResponse):
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": part.call_id,
                    "name": part.name,
                    "content": json.dumps(part.outcome, ensure_ascii=False),
                }
            )
        elif isinstance(part, Text):
            content.append({"type": "text", "text": part.text})
        elif isinstance(part, InlineMedia):
            content.append(media_content_item(part))
    if content:
        if all(item["type"] == "text" for item in content):
            text = "\n\n".join(item["text"] for item in content)
            messages.append({"role": "user", "content": text})
        else:
            messages.append({"role": "user", "content": content})
    return messages


def media_content_item(media: InlineMedia) -> dict:
    """Encode inline media as an OpenAI-style user content item."""
    encoded = base64.b64encode(media.data).decode("ascii")
    mime = media.mime_type.split(";")[0].strip()
    if mime.startswith("image/"):
        return {
            "type": "image_url",
            "image_url": {"url": f"data:{mime};base64,{encoded}"},
        }
    if mime.startswith("audio/"):
        audio_format = mime.split("/", 1)[1].removeprefix("x-")
        if audio_format == "mpeg":
            audio_format = "mp3"
        return {
            "type": "input_audio",
            "input_audio": {"data": encoded, "format": audio_format},
        }
    return {
        "type": "file",
        "file": {"file_data": f"data:{mime};base64,{encoded}"},
    }
