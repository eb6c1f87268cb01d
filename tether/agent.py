"""Command-line entry point: build the conversation and run the generation."""

import argparse
import json
import os
import sys
import urllib.error
import urllib.request
from importlib import metadata
from pathlib import Path

from . import fmt
from .config import (
    PROVIDERS,
    _UNSET,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
    load_mcp_json,
    merge_mcp_configs,
)
from .generation import Orchestrator
from .history import History, InlineMedia
from .loop_guard import LoopGuard
from .media import MediaHandler
from .prompt import (
    convert_urls,
    load_attachments,
    merge_prompt,
    parse_mime_overrides,
    read_stdin,
)
from .report import AgentError, ConfigError, ReportCollector
from .resolver import ToolBinding, ToolResolver, parse_callback_flag
from .stream import ModelClient

LMSTUDIO_BASE_URL = "http://127.0.0.1:1234"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

# Function calling modes -> litellm tool_choice
_TOOL_MODES = {
    "auto": "auto",
    "none": "none",
    "any": "required",
    "required": "required",
}

_DEFAULT_VOICES = {"gemini": "Kore"}

_API_KEY_ENV = {
    "huggingface": "HF_TOKEN",
    "openrouter": "OPENROUTER_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


def build_parser():
    """Build and return the argument parser.

    Options that can also come from a config file default to a sentinel so
    that apply_config_to_args() can tell "not given" apart from a value.
    """
    parser = argparse.ArgumentParser(
        prog="tether",
        usage="%(prog)s [options] [prompt]",
        description="Stream a model response to the terminal, answering its "
        "function calls with local callbacks or MCP tools.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "prompt",
        nargs="?",
        default=None,
        help="Prompt text. Piped stdin is prepended to it.",
    )

    model_group = parser.add_argument_group("model")
    model_group.add_argument(
        "--provider",
        choices=PROVIDERS,
        default=_UNSET,
        help="LLM provider (default: lmstudio).",
    )
    model_group.add_argument(
        "-m",
        "--model",
        default=_UNSET,
        help="Model identifier. Discovered from LM Studio when omitted there.",
    )
    model_group.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    model_group.add_argument(
        "--base-url",
        default=_UNSET,
        help=f"Server base URL (default: {LMSTUDIO_BASE_URL} for lmstudio).",
    )
    model_group.add_argument(
        "-s",
        "--system-prompt",
        default=_UNSET,
        help="System instruction sent before the conversation.",
    )
    model_group.add_argument("--temperature", type=float, default=_UNSET)
    model_group.add_argument("--top-p", type=float, default=_UNSET)
    model_group.add_argument("--seed", type=int, default=_UNSET)
    model_group.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum tokens the model may generate per pass.",
    )
    model_group.add_argument(
        "-t",
        "--with-thinking",
        action="store_true",
        default=_UNSET,
        help="Ask the model to think before answering.",
    )
    model_group.add_argument(
        "--show-thinking",
        action="store_true",
        default=_UNSET,
        help="Print the model's thoughts to stderr.",
    )

    prompt_group = parser.add_argument_group("prompt")
    prompt_group.add_argument(
        "-f",
        "--file",
        action="append",
        default=[],
        metavar="PATH",
        help="Attach a file or directory to the prompt (repeatable).",
    )
    prompt_group.add_argument(
        "--override-mimetype",
        action="append",
        default=[],
        metavar=".EXT:TYPE",
        help="Force the MIME type of attached files with this extension.",
    )
    prompt_group.add_argument(
        "--convert-urls",
        action="store_true",
        default=_UNSET,
        help="Replace URLs in the prompt with the text they point to.",
    )

    tools_group = parser.add_argument_group("tools")
    tools_group.add_argument(
        "--tools",
        default=None,
        metavar="JSON|@FILE",
        help="Function declarations as a JSON list, or @path to a JSON file.",
    )
    tools_group.add_argument(
        "--tool-config",
        default=_UNSET,
        metavar="JSON|@FILE",
        help="Function calling mode: auto, none, any, a function name, or a "
        "functionCallingConfig JSON object.",
    )
    tools_group.add_argument(
        "--tool-callback",
        action="append",
        default=[],
        metavar="NAME:SPEC",
        help="Answer calls to NAME with an executable, @stdin or "
        "@format[=template] (repeatable).",
    )
    tools_group.add_argument(
        "--tool-confirm",
        action="append",
        default=[],
        metavar="NAME",
        help="Ask before running the callback for NAME (repeatable).",
    )
    tools_group.add_argument(
        "--mcp-command",
        action="append",
        default=[],
        metavar="CMD",
        help="Start an MCP server over stdio (repeatable).",
    )
    tools_group.add_argument(
        "--mcp-url",
        action="append",
        default=[],
        metavar="URL",
        help="Connect to an MCP server over streamable HTTP (repeatable).",
    )
    tools_group.add_argument(
        "--mcp-config",
        default=None,
        metavar="FILE",
        help="Load MCP servers from a .mcp.json file.",
    )
    tools_group.add_argument(
        "--no-mcp",
        action="store_true",
        default=_UNSET,
        help="Don't connect to any MCP server.",
    )
    tools_group.add_argument(
        "-r",
        "--recurse",
        action="store_true",
        default=_UNSET,
        help="Send tool results back to the model and keep generating.",
    )
    tools_group.add_argument(
        "--max-repeat",
        type=int,
        default=_UNSET,
        help="Identical calls allowed before stopping (default: 5).",
    )
    tools_group.add_argument(
        "--force-call-destructive-tools",
        action="store_true",
        default=_UNSET,
        help="Run tools that need confirmation without asking.",
    )
    tools_group.add_argument(
        "--show-callback-results",
        action="store_true",
        default=_UNSET,
        help="Print what each tool returned.",
    )
    tools_group.add_argument(
        "--callback-timeout",
        type=float,
        default=_UNSET,
        help="Seconds a local callback may run (default: 60).",
    )

    media_group = parser.add_argument_group("media")
    media_group.add_argument(
        "--save-images",
        action="store_true",
        default=_UNSET,
        help="Save generated images to the temp directory instead of drawing them.",
    )
    media_group.add_argument(
        "--save-images-to-dir",
        default=_UNSET,
        metavar="DIR",
        help="Save generated images to DIR.",
    )
    media_group.add_argument(
        "--save-speech-to-dir",
        default=_UNSET,
        metavar="DIR",
        help="Save generated speech to DIR (default: temp directory).",
    )
    media_group.add_argument(
        "--error-on-unsupported-type",
        action="store_true",
        default=_UNSET,
        help="Fail on media types that cannot be handled.",
    )
    generate_group = media_group.add_mutually_exclusive_group()
    generate_group.add_argument(
        "--with-images",
        action="store_true",
        help="Ask the model to generate images alongside text.",
    )
    generate_group.add_argument(
        "--with-speech",
        action="store_true",
        help="Ask the model to answer with speech alongside text.",
    )
    media_group.add_argument(
        "--speech-voice",
        default=_UNSET,
        metavar="VOICE",
        help="Voice for --with-speech (default: Kore on gemini, alloy elsewhere).",
    )
    media_group.add_argument(
        "--speech-language",
        default=_UNSET,
        metavar="LANG",
        help="Language code for --with-speech, e.g. en-US.",
    )

    parser.add_argument(
        "-l",
        "--list-models",
        action="store_true",
        help="List the models the provider offers and exit.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=_UNSET,
        help="Seconds the whole generation may take (default: 300).",
    )
    parser.add_argument(
        "--report",
        default=None,
        metavar="FILE",
        help="Write a JSON report of the run to FILE.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a template config file and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, write ./tether.toml instead of the global file.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress diagnostics and warnings.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Show tool and pass details; twice to also dump the history.",
    )
    return parser


def discover_model(base_url: str, verbose: int) -> str:
    """Query LM Studio's native API to find the currently loaded LLM."""
    url = f"{base_url}/api/v1/models"
    if verbose:
        fmt.model_info(f"Querying {url} for loaded models...")

    data = _fetch_json(url, "LM Studio")
    for entry in _lmstudio_entries(data):
        if entry.get("type") == "llm" and entry.get("loaded_instances"):
            model_key = entry.get("id", entry.get("key"))
            if verbose:
                fmt.model_info(f"Discovered loaded model: {model_key}")
            return model_key

    raise AgentError(
        "no loaded LLM found in LM Studio. "
        "Load a model in LM Studio or use --model to specify one."
    )


def _fetch_json(url: str, service: str, headers: dict | None = None) -> dict:
    try:
        req = urllib.request.Request(url, headers=headers or {})
        with urllib.request.urlopen(req, timeout=10) as resp:
            data = json.loads(resp.read().decode())
    except urllib.error.URLError as e:
        raise AgentError(f"could not connect to {service} at {url}: {e}")
    except json.JSONDecodeError as e:
        raise AgentError(f"invalid JSON from {url}: {e}")
    if not isinstance(data, dict):
        raise AgentError(f"unexpected response from {url}")
    return data


def _lmstudio_entries(data: dict) -> list:
    # LM Studio uses "data" (OpenAI-compat) or "models" (native API) as the top-level key
    return data.get("data") or data.get("models") or []


def list_models(
    provider: str, base_url: str | None, api_key: str | None, verbose: int = 0
) -> list[tuple[str, str]]:
    """Return ``(name, detail)`` pairs for the models a provider offers."""
    models: list[tuple[str, str]] = []
    if provider == "lmstudio":
        url = f"{base_url or LMSTUDIO_BASE_URL}/api/v1/models"
        if verbose:
            fmt.model_info(f"Querying {url}...")
        for entry in _lmstudio_entries(_fetch_json(url, "LM Studio")):
            state = "loaded" if entry.get("loaded_instances") else "not loaded"
            models.append(
                (entry.get("id", entry.get("key", "")), f"{entry.get('type', '?')}, {state}")
            )
    elif provider == "openrouter":
        url = f"{base_url or OPENROUTER_BASE_URL}/models"
        if verbose:
            fmt.model_info(f"Querying {url}...")
        data = _fetch_json(url, "OpenRouter", {"Authorization": f"Bearer {api_key}"})
        for entry in data.get("data") or []:
            detail = entry.get("name", "")
            if entry.get("context_length"):
                detail += f", context {entry['context_length']} tokens"
            models.append((entry.get("id", ""), detail))
    elif provider == "gemini":
        base = f"{base_url or GEMINI_BASE_URL}/models?pageSize=1000"
        headers = {"x-goog-api-key": api_key or ""}
        token = None
        while True:
            url = base + (f"&pageToken={token}" if token else "")
            if verbose:
                fmt.model_info(f"Querying {url}...")
            data = _fetch_json(url, "Gemini", headers)
            for entry in data.get("models") or []:
                name = entry.get("name", "").removeprefix("models/")
                detail = (
                    f"{entry.get('displayName', name)}, "
                    f"input {entry.get('inputTokenLimit', '?')} tokens, "
                    f"output {entry.get('outputTokenLimit', '?')} tokens, "
                    f"actions: {', '.join(entry.get('supportedGenerationMethods') or [])}"
                )
                models.append((name, detail))
            token = data.get("nextPageToken")
            if not token:
                break
    else:
        raise ConfigError(f"--list-models is not supported for {provider}")
    return models


def parse_tool_config(value: str | None) -> tuple[object, list[str] | None]:
    """Turn ``--tool-config`` into a litellm ``tool_choice`` and an allow-list.

    Accepts a mode (``auto``, ``none``, ``any``/``required``), a function
    name, an OpenAI ``tool_choice`` object, or a ``functionCallingConfig``
    object with ``mode`` and ``allowedFunctionNames``. ``@path`` reads the
    value from a file. The allow-list is None when every tool stays offered.
    """
    if not value:
        return None, None
    if value.startswith("@"):
        path = Path(value[1:]).expanduser()
        try:
            value = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"cannot read tool config from {path}: {e}")
    value = value.strip()
    try:
        data = json.loads(value)
    except json.JSONDecodeError:
        data = value

    if isinstance(data, str):
        mode = data.strip()
        if mode.lower() in _TOOL_MODES:
            return _TOOL_MODES[mode.lower()], None
        if not mode:
            raise ConfigError("empty --tool-config")
        return {"type": "function", "function": {"name": mode}}, [mode]
    if not isinstance(data, dict):
        raise ConfigError("--tool-config must be a mode, a function name or an object")

    if data.get("type") == "function":
        name = (data.get("function") or {}).get("name")
        if not isinstance(name, str) or not name:
            raise ConfigError("--tool-config: function choice has no name")
        return data, [name]

    fcc = data.get("functionCallingConfig", data.get("function_calling_config", data))
    if not isinstance(fcc, dict):
        raise ConfigError("--tool-config: functionCallingConfig must be an object")
    mode = fcc.get("mode", "AUTO")
    if not isinstance(mode, str) or mode.lower() not in _TOOL_MODES:
        raise ConfigError(f"--tool-config: unknown mode {mode!r}")
    allowed = fcc.get("allowedFunctionNames", fcc.get("allowed_function_names"))
    if allowed is None:
        return _TOOL_MODES[mode.lower()], None
    if not isinstance(allowed, list) or not all(isinstance(n, str) for n in allowed):
        raise ConfigError("--tool-config: allowedFunctionNames must be a list of names")
    if mode.lower() in ("any", "required") and len(allowed) == 1:
        return {"type": "function", "function": {"name": allowed[0]}}, allowed
    return _TOOL_MODES[mode.lower()], allowed


def generation_options(args) -> dict:
    """Per-pass model options derived from the command line."""
    options = {
        "temperature": args.temperature,
        "top_p": args.top_p,
        "seed": args.seed,
        "max_output_tokens": args.max_output_tokens,
        "include_thoughts": args.with_thinking,
    }
    if args.with_images:
        options["modalities"] = ["text", "image"]
    elif args.with_speech:
        options["modalities"] = ["text", "audio"]
        audio = {
            "voice": args.speech_voice or _DEFAULT_VOICES.get(args.provider, "alloy"),
            "format": "pcm16",
        }
        if args.speech_language:
            audio["language"] = args.speech_language
        options["audio"] = audio
    return options


def resolve_api_key(provider: str, api_key: str | None) -> str | None:
    if provider == "lmstudio":
        return None
    env_var = _API_KEY_ENV[provider]
    key = api_key or os.environ.get(env_var)
    if not key:
        raise ConfigError(
            f"--api-key or {env_var} env var required for {provider} provider"
        )
    return key


def load_declarations(value: str | None) -> tuple[list[dict], dict[str, dict]]:
    """Parse ``--tools`` into OpenAI tool entries plus a name -> schema map.

    Accepts a JSON list whose entries are either bare declarations
    (``name``/``description``/``parameters``) or ``{"type": "function",
    "function": {...}}`` objects. ``@path`` reads the JSON from a file.
    """
    if not value:
        return [], {}
    if value.startswith("@"):
        path = Path(value[1:]).expanduser()
        try:
            value = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"cannot read tool declarations from {path}: {e}")
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid JSON in tool declarations: {e}")
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ConfigError("tool declarations must be a JSON list")

    tools: list[dict] = []
    schemas: dict[str, dict] = {}
    for i, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ConfigError(f"tool declaration #{i} must be an object")
        decl = entry.get("function", entry) if entry.get("type") == "function" else entry
        name = decl.get("name")
        if not isinstance(name, str) or not name:
            raise ConfigError(f"tool declaration #{i} has no name")
        if name in schemas:
            raise ConfigError(f"tool {name!r} is declared twice")
        parameters = decl.get("parameters") or {"type": "object", "properties": {}}
        if not isinstance(parameters, dict):
            raise ConfigError(f"tool {name!r}: 'parameters' must be an object")
        tools.append(
            {
                "type": "function",
                "function": {
                    "name": name,
                    "description": decl.get("description", ""),
                    "parameters": parameters,
                },
            }
        )
        schemas[name] = parameters
    return tools, schemas


def build_bindings(callbacks: list[str], confirm: list[str]) -> dict[str, ToolBinding]:
    """Later flags for the same name replace earlier ones."""
    confirm_set = set(confirm)
    bindings: dict[str, ToolBinding] = {}
    for value in callbacks:
        name, spec = parse_callback_flag(value)
        bindings[name] = ToolBinding.parse(name, spec, confirm=name in confirm_set)
    return bindings


def build_history(args) -> tuple[History, str]:
    """Assemble the first user turn from stdin, the prompt and attached files."""
    text = merge_prompt(read_stdin(), args.prompt)
    attachments = load_attachments(
        args.file, parse_mime_overrides(args.override_mimetype)
    )
    if not text and not attachments:
        raise ConfigError("a prompt is required (as an argument or on stdin)")
    if text and args.convert_urls:
        text = convert_urls(text, verbose=bool(args.verbose))

    history = History()
    for part in attachments:
        if isinstance(part, InlineMedia):
            history.append_user_media(part)
        else:
            history.append_user_text(part.text)
    if text:
        history.append_user_text(text)
    return history, text or ""


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("tether")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.project and not args.init_config:
        parser.error("--project requires --init-config")
    if args.init_config:
        sys.exit(_init_config(args.project))

    try:
        config = load_config(Path.cwd())
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)

    if args.quiet:
        args.verbose = 0

    fmt.init(color=args.color, no_color=args.no_color, quiet=args.quiet)

    report = ReportCollector() if args.report else None

    def _write_report(exit_code, model_id, prompt="", error_message=None):
        if not report:
            return
        report.finalize(
            prompt=prompt,
            model=model_id,
            provider=args.provider,
            settings={
                "temperature": args.temperature,
                "top_p": args.top_p,
                "seed": args.seed,
                "max_output_tokens": args.max_output_tokens,
                "recurse": args.recurse,
                "max_repeat": args.max_repeat,
                "timeout": args.timeout,
                "with_thinking": args.with_thinking,
                "with_images": args.with_images,
                "with_speech": args.with_speech,
                "tool_callbacks": sorted(
                    parse_callback_flag(v)[0] for v in args.tool_callback
                ),
                "mcp_servers": sorted(getattr(args, "_resolved_servers", [])),
            },
            exit_code=exit_code,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        exit_code = _run_main(args, report, _write_report)
    except AgentError as e:
        fmt.error(str(e))
        _write_report(
            e.exit_code,
            getattr(args, "_resolved_model_id", args.model or "unknown"),
            getattr(args, "_resolved_prompt", ""),
            str(e),
        )
        sys.exit(e.exit_code)
    sys.exit(exit_code)


def _init_config(project: bool) -> int:
    if project:
        path = Path.cwd() / "tether.toml"
    else:
        path = global_config_dir() / "config.toml"
    if path.exists():
        fmt.error(f"{path} already exists, not overwriting")
        return 1
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(generate_config(project=project), encoding="utf-8")
    print(f"Wrote {path}")
    return 0


def _run_main(args, report, _write_report) -> int:
    verbose = args.verbose

    if args.max_repeat < 1:
        raise ConfigError("--max-repeat must be at least 1")
    if args.timeout <= 0 or args.callback_timeout <= 0:
        raise ConfigError("--timeout and --callback-timeout must be positive")

    if args.list_models:
        api_key = resolve_api_key(args.provider, args.api_key)
        for name, detail in list_models(args.provider, args.base_url, api_key, verbose):
            fmt.model_entry(name, detail)
        return 0

    tool_choice, allowed_tools = parse_tool_config(args.tool_config)
    system_prompt = args.system_prompt
    if system_prompt and (args.with_images or args.with_speech):
        fmt.warning("the system prompt is not used when generating images or speech")
        system_prompt = None

    if args.provider == "lmstudio":
        base_url = args.base_url or LMSTUDIO_BASE_URL
        model_id = args.model or discover_model(base_url, verbose)
    else:
        if not args.model:
            raise ConfigError(f"--model is required when --provider is {args.provider}")
        base_url = args.base_url
        model_id = args.model
    api_key = resolve_api_key(args.provider, args.api_key)
    args._resolved_model_id = model_id
    if verbose:
        fmt.model_info(f"Using {args.provider} model: {model_id}")

    history, prompt_text = build_history(args)
    args._resolved_prompt = prompt_text

    tools, schemas = load_declarations(args.tools)
    bindings = build_bindings(args.tool_callback, args.tool_confirm)

    servers = {}
    if not args.no_mcp:
        json_servers = load_mcp_json(Path(args.mcp_config)) if args.mcp_config else None
        from .mcp_client import servers_from_cli

        cli_servers = servers_from_cli(args.mcp_command, args.mcp_url)
        servers = merge_mcp_configs(
            {**args.mcp_servers, **cli_servers}, json_servers
        )
    args._resolved_servers = list(servers)

    catalog = None
    if servers:
        from .mcp_client import RemoteToolCatalog

        catalog = RemoteToolCatalog(servers, verbose=bool(verbose))
        catalog.start()
        if verbose:
            fmt.info(f"MCP tools: {', '.join(catalog.tool_names()) or '(none)'}")
        declared = set(schemas)
        for decl in catalog.declarations():
            if decl["function"]["name"] not in declared:
                tools.append(decl)

    if allowed_tools is not None:
        unknown = set(allowed_tools) - {t["function"]["name"] for t in tools}
        if unknown:
            if catalog is not None:
                catalog.close()
            raise ConfigError(
                f"--tool-config names undeclared functions: {', '.join(sorted(unknown))}"
            )
        tools = [t for t in tools if t["function"]["name"] in allowed_tools]
    options = generation_options(args)
    if tool_choice is not None:
        options["tool_choice"] = tool_choice

    media = MediaHandler(
        save_images=args.save_images,
        save_images_dir=args.save_images_to_dir,
        save_speech_dir=args.save_speech_to_dir,
        error_on_unsupported=args.error_on_unsupported_type,
        verbose=bool(verbose),
    )
    resolver = ToolResolver(
        bindings,
        catalog,
        loop_guard=LoopGuard(args.max_repeat),
        media=media,
        schemas=schemas,
        force_confirm=args.force_call_destructive_tools,
        recurse=args.recurse,
        show_results=args.show_callback_results,
        verbose=bool(verbose),
        callback_timeout=args.callback_timeout,
        report=report,
    )
    client = ModelClient(
        args.provider,
        model_id,
        base_url=base_url,
        api_key=api_key,
        verbose=bool(verbose),
    )
    orchestrator = Orchestrator(
        client,
        resolver,
        media,
        catalog=catalog,
        tools=tools,
        options=options,
        system_prompt=system_prompt,
        recurse=args.recurse,
        timeout=args.timeout,
        show_thinking=args.show_thinking,
        verbose=verbose,
        report=report,
    )

    outcome = orchestrator.run(history)
    error_message = None
    if outcome.error is not None:
        error_message = str(outcome.error) or type(outcome.error).__name__
        fmt.error(error_message)
    _write_report(outcome.exit_code, model_id, prompt_text, error_message)
    return outcome.exit_code
