"""Repeat-call containment for recursive tool use."""

from .history import FunctionCall, History, render_call
from .report import LoopGuardError

DEFAULT_MAX_REPEAT = 5


class LoopGuard:
    """Reject a function call once it has been issued more than ``limit`` times.

    Only FunctionCall parts are counted, by exact match of their canonical
    ``name(args)`` rendering. The call being checked is expected to be in the
    history already, so with a limit of N the (N+1)-th identical call fails.
    """

    def __init__(self, limit: int = DEFAULT_MAX_REPEAT):
        if limit < 1:
            raise ValueError(f"repeat limit must be at least 1, got {limit}")
        self.limit = limit

    def count(self, history: History, call_text: str) -> int:
        return sum(
            1
            for part in history.function_calls()
            if render_call(part.name, part.args) == call_text
        )

    def check(self, history: History, call: FunctionCall) -> str:
        """Return the call's canonical text, or raise LoopGuardError."""
        call_text = render_call(call.name, call.args)
        if self.count(history, call_text) > self.limit:
            raise LoopGuardError(call_text, self.limit)
        return call_text
