"""Recursive tool-calling generation.

One *pass* streams a model response to its terminal signal, answering every
function call on the way. Passes repeat while recursion is enabled and the
history ends with a tool answer the model has not seen yet.
"""

import json
import queue
import threading
import time
from dataclasses import dataclass

import tiktoken

from . import fmt
from .history import FunctionCall, History, render_call
from .report import AgentError, DeadlineExceededError, FinishReasonError
from .stream import (
    Finish,
    FunctionCallDelta,
    MediaDelta,
    ModelVersion,
    TextDelta,
    ThoughtDelta,
    Usage,
)

DEFAULT_TIMEOUT = 300

_encoder = tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    total = 0
    for m in messages:
        content = m.get("content") or ""
        if isinstance(content, list):
            content = " ".join(
                item.get("text", "") for item in content if item.get("type") == "text"
            )
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments", "") or "")
        total += len(_encoder.encode(content))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # Per-message overhead for role and separators, about 4 tokens each
    total += 4 * len(messages)
    return total


@dataclass
class PassOutcome:
    exit_code: int
    error: Exception | None = None
    history: History | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.error is None


class StreamClassifier:
    """Route each increment of one pass to its handler, in arrival order."""

    def __init__(
        self,
        history: History,
        resolver,
        media,
        *,
        show_thinking: bool = False,
        verbose: int = 0,
        report=None,
        pass_number: int = 1,
    ):
        self.history = history
        self.resolver = resolver
        self.media = media
        self.show_thinking = show_thinking
        self.verbose = verbose
        self.report = report
        self.pass_number = pass_number
        self.thinking = False
        self.usage: Usage | None = None
        self.model_version: str | None = None

    def consume(self, increments) -> str | None:
        """Consume increments until a finish signal or the end of the stream.

        Returns the finish reason, or None for a clean end of stream.
        Errors from the stream or from handlers propagate.
        """
        try:
            for inc in increments:
                if isinstance(inc, Finish):
                    self._end_thought()
                    self._finish()
                    return inc.reason
                self.handle(inc)
        finally:
            self._end_thought()
        fmt.ensure_newline()
        return None

    def handle(self, inc) -> None:
        if isinstance(inc, Usage):
            self.usage = inc
            if self.report:
                self.report.record_usage(inc.as_dict())
            return
        if isinstance(inc, ModelVersion):
            if self.model_version is None:
                self.model_version = inc.name
                if self.verbose:
                    fmt.model_version(inc.name)
            return

        if isinstance(inc, ThoughtDelta):
            if not self.thinking:
                self.thinking = True
                if self.show_thinking:
                    fmt.thought_begin()
            if self.show_thinking:
                fmt.thought_text(inc.text)
            return
        self._end_thought()

        if isinstance(inc, TextDelta):
            fmt.stream_text(inc.text)
            self.history.append_model_text(inc.text)
        elif isinstance(inc, MediaDelta):
            fmt.ensure_newline()
            self.media.handle(inc.data, inc.mime_type)
        elif isinstance(inc, FunctionCallDelta):
            self._function_call(inc)
        else:
            raise AgentError(f"unexpected stream increment: {inc!r}")

    def _end_thought(self) -> None:
        if self.thinking:
            self.thinking = False
            if self.show_thinking:
                fmt.thought_end()

    def _function_call(self, inc: FunctionCallDelta) -> None:
        call = FunctionCall(
            name=inc.name,
            args=inc.args,
            call_id=inc.call_id,
            continuation_token=inc.continuation_token,
        )
        self.history.append_function_call(call)
        response = self.resolver.resolve(
            self.history,
            call,
            pass_number=self.pass_number,
            invalid_arguments=inc.invalid_arguments,
        )
        self.history.append_function_response(response)

    def _finish(self) -> None:
        fmt.ensure_newline()
        if self.verbose and self.usage is not None and self.usage.describe():
            fmt.usage(self.usage.describe())


class RecursionController:
    """Decide whether another pass should consume pending tool answers."""

    def __init__(self, recurse: bool = False):
        self.recurse = recurse

    def should_recurse(self, outcome: PassOutcome, history: History) -> bool:
        return self.recurse and outcome.ok and history.ends_with_user_turn()


class Orchestrator:
    """Run passes against a shared history until no recursion is needed.

    Each pass runs on a daemon worker thread and reports over a one-slot
    queue. The orchestrator waits at most until the deadline computed when
    ``run`` starts; a pass that misses it is abandoned and its late result
    is never read. The remote catalog, if any, is closed exactly once when
    ``run`` returns.
    """

    def __init__(
        self,
        client,
        resolver,
        media,
        *,
        catalog=None,
        tools: list | None = None,
        options: dict | None = None,
        system_prompt: str | None = None,
        recurse: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        show_thinking: bool = False,
        verbose: int = 0,
        report=None,
    ):
        self.client = client
        self.resolver = resolver
        self.media = media
        self.catalog = catalog
        self.tools = tools or None
        self.options = options or {}
        self.system_prompt = system_prompt
        self.controller = RecursionController(recurse)
        self.timeout = timeout
        self.show_thinking = show_thinking
        self.verbose = verbose
        self.report = report

    def run(self, history: History) -> PassOutcome:
        deadline = time.monotonic() + self.timeout
        try:
            pass_number = 0
            while True:
                pass_number += 1
                outcome = self._run_with_deadline(history, pass_number, deadline)
                if not self.controller.should_recurse(outcome, history):
                    return outcome
                if self.verbose:
                    fmt.recursing(pass_number + 1)
                if self.verbose >= 2:
                    fmt.info(
                        "Generating recursively with history:\n"
                        + json.dumps(
                            history.to_messages(self.system_prompt),
                            indent=2,
                            ensure_ascii=False,
                        )
                    )
        finally:
            if self.catalog is not None:
                self.catalog.close()

    def _run_with_deadline(
        self, history: History, pass_number: int, deadline: float
    ) -> PassOutcome:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            err = DeadlineExceededError(
                f"generation timed out after {self.timeout}s (before pass {pass_number})"
            )
            return PassOutcome(err.exit_code, err, history)

        results: queue.Queue = queue.Queue(maxsize=1)
        worker = threading.Thread(
            target=self._pass_worker,
            args=(history, pass_number, results),
            name=f"tether-pass-{pass_number}",
            daemon=True,
        )
        worker.start()
        remaining = max(0.0, deadline - time.monotonic())
        try:
            return results.get(timeout=remaining)
        except queue.Empty:
            err = DeadlineExceededError(
                f"generation timed out after {self.timeout}s (pass {pass_number})"
            )
            return PassOutcome(err.exit_code, err, history)

    def _pass_worker(
        self, history: History, pass_number: int, results: queue.Queue
    ) -> None:
        try:
            outcome = self.run_pass(history, pass_number)
        except AgentError as e:
            outcome = PassOutcome(e.exit_code, e, history)
        except Exception as e:
            outcome = PassOutcome(1, e, history)
        results.put_nowait(outcome)

    def run_pass(self, history: History, pass_number: int) -> PassOutcome:
        """Run a single pass synchronously; raises on any fatal condition."""
        messages = history.to_messages(self.system_prompt)
        token_est = estimate_tokens(messages, self.tools)
        if self.verbose:
            fmt.pass_header(pass_number, token_est)

        classifier = StreamClassifier(
            history,
            self.resolver,
            self.media,
            show_thinking=self.show_thinking,
            verbose=self.verbose,
            report=self.report,
            pass_number=pass_number,
        )
        reason = None
        t0 = time.monotonic()
        try:
            increments = self.client.stream_generate(
                messages, self.tools, self.options
            )
            reason = classifier.consume(increments)
        finally:
            elapsed = time.monotonic() - t0
            if self.report:
                self.report.record_pass(pass_number, elapsed, token_est, reason)

        if self.verbose:
            fmt.llm_timing(elapsed, reason)
        if reason is not None and reason != "stop":
            raise FinishReasonError(reason)
        unanswered = history.pending_calls()
        if unanswered:
            names = ", ".join(render_call(c.name, c.args) for c in unanswered)
            raise AgentError(f"function call left without a response: {names}")
        return PassOutcome(0, None, history)
