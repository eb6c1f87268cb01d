"""ANSI-formatted output using Rich.

Generated text is streamed to stdout; everything else goes to stderr.
"""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)
_out = Console(soft_wrap=True, highlight=False)
_ends_with_newline = True
_quiet = False


def init(*, color: bool = False, no_color: bool = False, quiet: bool = False) -> None:
    """Reconfigure the module-level consoles from CLI flags.

    Call once at startup, before any output. ``quiet`` silences warnings.
    """
    global _console, _out, _quiet
    _quiet = quiet
    kwargs: dict = {}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(stderr=True, **kwargs)
    _out = Console(soft_wrap=True, highlight=False, **kwargs)


def console() -> Console:
    """Return the stderr console (for image rendering and prompts)."""
    return _console


# -- Streamed output ---------------------------------------------------------


def stream_text(text: str) -> None:
    global _ends_with_newline
    if not text:
        return
    _out.print(Text(text, style="bright_white"), end="")
    _ends_with_newline = text.endswith("\n")


def ensure_newline() -> None:
    """Terminate a partially streamed line before printing anything else."""
    global _ends_with_newline
    if not _ends_with_newline:
        _out.print()
        _ends_with_newline = True


def thought_begin() -> None:
    ensure_newline()
    _console.print(Text("<thought>", style="bright_yellow"))


def thought_text(text: str) -> None:
    _console.print(Text(text, style="dim yellow"), end="")


def thought_end() -> None:
    _console.print()
    _console.print(Text("</thought>", style="bright_yellow"))


def callback_output(text: str) -> None:
    ensure_newline()
    _out.print(Text(text, style="bright_cyan"))


# -- Pass structure ----------------------------------------------------------


def pass_header(n: int, token_est: int) -> None:
    ensure_newline()
    title = f"Pass {n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def model_version(name: str) -> None:
    _console.print(Text(f"  model version: {name}", style="dim"))


def llm_timing(elapsed: float, finish_reason: str | None) -> None:
    style = "green" if finish_reason in ("stop", None) else "yellow"
    text = Text()
    text.append(f"  Model responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def usage(line: str) -> None:
    _console.print(Text(f"  tokens {line}", style="dim"))


def recursing(n: int) -> None:
    _console.print(
        Text(f"  \u21bb Recursing with tool results (pass {n})", style="cyan")
    )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str, target: str = "") -> None:
    ensure_newline()
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(name, style="bold magenta")
    if target:
        header.append(f"  via {target}", style="magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  \u2713 {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header, soft_wrap=True)


def tool_skipped(target: str, call_text: str) -> None:
    ensure_newline()
    _console.print(
        Text(
            f"Skipped execution of '{target}' for function '{call_text}'.",
            style="bright_yellow",
        ),
        soft_wrap=True,
    )


def function_call(label: str, call_json: str) -> None:
    ensure_newline()
    line = Text()
    line.append(f"{label}: ", style="bright_yellow")
    line.append(call_json)
    _console.print(line, soft_wrap=True)


def loop_guard(call_text: str, limit: int) -> None:
    line = Text()
    line.append("  \u26a0 Loop guard: ", style="bold yellow")
    line.append(
        f"{call_text} repeated more than {limit} times, stopping.",
        style="yellow",
    )
    _console.print(line, soft_wrap=True)


# -- Model listing -----------------------------------------------------------


def model_entry(name: str, detail: str = "") -> None:
    """One line of ``--list-models`` output, on stdout."""
    line = Text(name, style="bold bright_white")
    if detail:
        line.append(f"  {detail}", style="dim")
    _out.print(line)


# -- Media -------------------------------------------------------------------


def saved_file(kind: str, path: str) -> None:
    ensure_newline()
    _console.print(
        Text(f"Saved {kind} to file: {path}", style="bright_green"), soft_wrap=True
    )


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"), soft_wrap=True)


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    if _quiet:
        return
    ensure_newline()
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line, soft_wrap=True)


def error(msg: str) -> None:
    ensure_newline()
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line, soft_wrap=True)


def mcp_server_start(name: str, tool_count: int) -> None:
    _console.print(
        Text(f"  MCP server {name!r}: {tool_count} tool(s) available", style="dim")
    )


def mcp_server_error(name: str, msg: str) -> None:
    line = Text()
    line.append(f"  \u2717 MCP server {name!r}: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line, soft_wrap=True)
