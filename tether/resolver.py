"""Resolve model function calls to local callbacks or remote MCP tools."""

import json
import string
import time
from dataclasses import dataclass
from pathlib import Path

from . import executor, fmt, interact
from .history import (
    FunctionCall,
    FunctionResponse,
    History,
    InlineMedia,
    validate_arguments,
)
from .loop_guard import LoopGuard
from .mcp_client import convert_result
from .report import ConfigError, LoopGuardError, ToolExecutionError

STDIN_CALLBACK = "@stdin"
FORMAT_CALLBACK = "@format"

EXECUTABLE = "executable"
STDIN_PROMPT = "stdin-prompt"
TEMPLATE_FORMAT = "template-format"

MAX_ARG_LOG = 1000


@dataclass(frozen=True)
class ToolBinding:
    """Static mapping from a function name to its local execution strategy."""

    name: str
    kind: str
    target: str = ""
    requires_confirmation: bool = False

    @classmethod
    def parse(cls, name: str, spec: str, confirm: bool = False) -> "ToolBinding":
        """Build a binding from a callback spec.

        ``@stdin`` reads the answer from the operator, ``@format`` answers
        with the pretty-printed arguments and ``@format=<template>`` renders
        the arguments through a ``string.Template``. Anything else is the
        path of an executable. Predefined callbacks never need confirmation.
        """
        if not name:
            raise ConfigError("tool callback needs a function name")
        spec = spec.strip()
        if not spec:
            raise ConfigError(f"tool callback for {name!r} is empty")
        if spec == STDIN_CALLBACK:
            return cls(name, STDIN_PROMPT)
        if spec == FORMAT_CALLBACK:
            return cls(name, TEMPLATE_FORMAT)
        if spec.startswith(FORMAT_CALLBACK + "="):
            return cls(name, TEMPLATE_FORMAT, spec[len(FORMAT_CALLBACK) + 1 :])
        return cls(name, EXECUTABLE, str(Path(spec).expanduser()), confirm)

    @property
    def label(self) -> str:
        if self.kind == STDIN_PROMPT:
            return STDIN_CALLBACK
        if self.kind == TEMPLATE_FORMAT:
            return FORMAT_CALLBACK
        return self.target


def parse_callback_flag(value: str) -> tuple[str, str]:
    """Split a ``name:spec`` flag value."""
    name, sep, spec = value.partition(":")
    if not sep or not name.strip() or not spec.strip():
        raise ConfigError(
            f"invalid tool callback {value!r}: expected 'name:/path/to/exe', "
            "'name:@stdin' or 'name:@format[=template]'"
        )
    return name.strip(), spec.strip()


def render_template(template: str, args: dict) -> str:
    """Substitute arguments into ``template``; non-string values become JSON."""
    values = {
        k: v if isinstance(v, str) else json.dumps(v, ensure_ascii=False)
        for k, v in args.items()
    }
    try:
        return string.Template(template).substitute(values)
    except (KeyError, ValueError) as e:
        raise ToolExecutionError(
            f"failed to execute template for {FORMAT_CALLBACK}: {e}"
        ) from e


def declined_outcome(call_text: str) -> dict:
    return {"error": f"User chose not to call function '{call_text}'."}


def unmatched_outcome(call_text: str) -> dict:
    return {"error": f"No matching tool; given function call was: {call_text}"}


class ToolResolver:
    """Decide how to answer a function call and produce its FunctionResponse.

    Runs the loop guard first, then tries local bindings, then the remote
    catalog. Declines and unknown tools are answered normally; execution
    failures raise and end the pass.
    """

    def __init__(
        self,
        bindings: dict[str, ToolBinding] | None = None,
        catalog=None,
        *,
        loop_guard: LoopGuard | None = None,
        media=None,
        schemas: dict[str, dict] | None = None,
        force_confirm: bool = False,
        recurse: bool = False,
        show_results: bool = False,
        verbose: bool = False,
        callback_timeout: float = executor.DEFAULT_TIMEOUT,
        report=None,
        confirm_fn=None,
        read_line_fn=None,
        run_fn=None,
    ):
        self.bindings = bindings or {}
        self.catalog = catalog
        self.loop_guard = loop_guard or LoopGuard()
        self.media = media
        self.schemas = schemas or {}
        self.force_confirm = force_confirm
        self.recurse = recurse
        self.show_results = show_results
        self.verbose = verbose
        self.callback_timeout = callback_timeout
        self.report = report
        self.confirm_fn = confirm_fn or interact.confirm
        self.read_line_fn = read_line_fn or interact.read_line
        self.run_fn = run_fn or executor.run_executable

    def resolve(
        self,
        history: History,
        call: FunctionCall,
        *,
        pass_number: int = 1,
        invalid_arguments: str | None = None,
    ) -> FunctionResponse:
        """Answer ``call``, which must already be the last part in ``history``."""
        try:
            call_text = self.loop_guard.check(history, call)
        except LoopGuardError as e:
            fmt.loop_guard(e.call_text, e.limit)
            if self.report:
                self.report.record_loop_guard(pass_number, e.call_text, e.limit)
            raise

        if self.verbose:
            pretty = json.dumps(call.args, indent=2, ensure_ascii=False)
            if len(pretty) > MAX_ARG_LOG:
                pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
            fmt.tool_call(call.name, pretty, self._target_label(call.name))

        t0 = time.monotonic()
        kind = "none"
        media: list[InlineMedia] = []
        try:
            error = invalid_arguments or validate_arguments(
                call.args, self._schema_for(call.name)
            )
            if error:
                kind = "invalid"
                fmt.tool_error(call.name, error)
                outcome, status = {"error": error}, "failed"
            elif call.name in self.bindings:
                binding = self.bindings[call.name]
                kind = binding.kind
                outcome, status = self._run_binding(binding, call, call_text)
            elif self.catalog is not None and self.catalog.find(call.name):
                kind = "remote"
                server, tool = self.catalog.find(call.name)
                outcome, status = self._run_remote(
                    server, tool, call, call_text, media
                )
            else:
                fmt.function_call("No matching tool for function call", call_text)
                outcome, status = unmatched_outcome(call_text), "unmatched"
        except ToolExecutionError as e:
            elapsed = time.monotonic() - t0
            fmt.tool_error(call.name, str(e))
            if self.report:
                self.report.record_tool_call(
                    pass_number, call.name, call.args, kind, "failed", elapsed, str(e)
                )
            raise

        elapsed = time.monotonic() - t0
        if self.report:
            self.report.record_tool_call(
                pass_number,
                call.name,
                call.args,
                kind,
                status,
                elapsed,
                outcome.get("error") if status != "executed" else None,
            )
        return FunctionResponse(
            name=call.name,
            outcome=outcome,
            call_id=call.call_id,
            continuation_token=call.continuation_token,
            media=media,
        )

    # --- Internal helpers ---

    def _schema_for(self, name: str) -> dict | None:
        if name in self.schemas:
            return self.schemas[name]
        if self.catalog is not None and name not in self.bindings:
            return self.catalog.input_schema(name)
        return None

    def _target_label(self, name: str) -> str:
        if name in self.bindings:
            return self.bindings[name].label
        if self.catalog is not None:
            found = self.catalog.find(name)
            if found:
                return f"MCP server {found[0]}"
        return ""

    def _confirmed(self, needed: bool, question: str) -> bool:
        if not needed or self.force_confirm:
            return True
        return self.confirm_fn(question)

    def _run_binding(
        self, binding: ToolBinding, call: FunctionCall, call_text: str
    ) -> tuple[dict, str]:
        if binding.kind == STDIN_PROMPT:
            answer = self.read_line_fn(
                f"Type your answer for function '{call_text}'"
            )
        elif binding.kind == TEMPLATE_FORMAT:
            if binding.target:
                answer = render_template(binding.target, call.args)
            else:
                answer = json.dumps(call.args, indent=2, ensure_ascii=False)
        else:
            question = (
                f"May I execute callback '{binding.target}' "
                f"for function '{call_text}'?"
            )
            if not self._confirmed(binding.requires_confirmation, question):
                fmt.tool_skipped(f"callback '{binding.target}'", call_text)
                return declined_outcome(call_text), "declined"
            t0 = time.monotonic()
            answer = self.run_fn(binding.target, call.args, self.callback_timeout)
            if self.verbose:
                fmt.tool_result(call.name, time.monotonic() - t0, answer[:500])

        self._after_result(call_text, [answer])
        return {"output": answer}, "executed"

    def _run_remote(
        self,
        server: str,
        tool,
        call: FunctionCall,
        call_text: str,
        media: list[InlineMedia],
    ) -> tuple[dict, str]:
        """Call a remote tool; inline media items are collected into ``media``."""
        question = f"May I call tool '{call_text}' from '{server}'?"
        if not self._confirmed(self.catalog.requires_confirmation(tool), question):
            fmt.tool_skipped(f"tool '{call.name}' from '{server}'", call_text)
            return declined_outcome(call_text), "declined"

        if self.verbose:
            fmt.info(f"calling tool '{call.name}' from '{server}'...")
        result = self.catalog.call_tool(server, call.name, call.args)
        items = convert_result(result)

        output: list[str] = []
        for item in items:
            if item["type"] == "text":
                output.append(item["text"])
                continue
            description = (
                f"[{item['type']}: {item['mime_type']}, {len(item['data'])} bytes]"
            )
            if self.media is not None:
                saved = self.media.handle_tool_media(item["data"], item["mime_type"])
                if saved is not None:
                    description += f" saved to {saved}"
            media.append(InlineMedia(item["data"], item["mime_type"]))
            output.append(description)

        self._after_result(call_text, output)
        return {"output": output}, "executed"

    def _after_result(self, call_text: str, results: list[str]) -> None:
        if not self.recurse:
            fmt.warning(f"Not recursing, ignoring the result of '{call_text}'.")
        if self.show_results or self.verbose:
            for res in results:
                fmt.callback_output(res)
