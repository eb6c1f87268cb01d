"""Configuration file loading and merging for tether.

Reads TOML config from ~/.config/tether/config.toml (global) and
<cwd>/tether.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import json
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "system_prompt": str,
    "temperature": (int, float),
    "top_p": (int, float),
    "seed": int,
    "max_output_tokens": int,
    "timeout": (int, float),
    "callback_timeout": (int, float),
    "recurse": bool,
    "max_repeat": int,
    "force_confirm": bool,
    "with_thinking": bool,
    "show_thinking": bool,
    "show_callback_results": bool,
    "save_images": bool,
    "save_images_dir": str,
    "save_speech_dir": str,
    "speech_voice": str,
    "speech_language": str,
    "tool_config": str,
    "error_on_unsupported": bool,
    "convert_urls": bool,
    "no_mcp": bool,
    "color": bool,
    "quiet": bool,
}

# Tables and lists that are validated on their own
_STRUCTURED_KEYS = ("tool_callbacks", "confirm_tools", "mcp_servers")

# Config key -> argparse dest (only where they differ)
_CONFIG_TO_ARGPARSE: dict[str, str] = {
    "force_confirm": "force_call_destructive_tools",
    "save_images_dir": "save_images_to_dir",
    "save_speech_dir": "save_speech_to_dir",
    "error_on_unsupported": "error_on_unsupported_type",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "lmstudio",
    "model": None,
    "api_key": None,
    "base_url": None,
    "system_prompt": None,
    "temperature": None,
    "top_p": None,
    "seed": None,
    "max_output_tokens": None,
    "timeout": 300,
    "callback_timeout": 60,
    "recurse": False,
    "max_repeat": 5,
    "force_call_destructive_tools": False,
    "with_thinking": False,
    "show_thinking": False,
    "show_callback_results": False,
    "save_images": False,
    "save_images_to_dir": None,
    "save_speech_to_dir": None,
    "speech_voice": None,
    "speech_language": None,
    "tool_config": None,
    "error_on_unsupported_type": False,
    "convert_urls": False,
    "no_mcp": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}

PROVIDERS = ("lmstudio", "huggingface", "openrouter", "gemini")


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "tether"
    return Path.home() / ".config" / "tether"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate value types and ranges in a parsed config dict.

    Raises ConfigError for type mismatches; warns about unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    if config.get("provider") is not None and config["provider"] not in PROVIDERS:
        raise ConfigError(
            f"{source}: 'provider' must be one of {', '.join(PROVIDERS)}, "
            f"got {config['provider']!r}"
        )
    if "max_repeat" in config and config["max_repeat"] < 1:
        raise ConfigError(f"{source}: 'max_repeat' must be at least 1")
    for key in ("timeout", "callback_timeout"):
        if key in config and config[key] <= 0:
            raise ConfigError(f"{source}: {key!r} must be positive")


def _validate_tool_callbacks(callbacks, source: str) -> None:
    if not isinstance(callbacks, dict):
        raise ConfigError(f"{source}: 'tool_callbacks' must be a table")
    for name, spec in callbacks.items():
        if not isinstance(spec, str):
            raise ConfigError(
                f"{source}: tool_callbacks.{name}: expected string, "
                f"got {type(spec).__name__}"
            )


def _validate_confirm_tools(names, source: str) -> None:
    if not isinstance(names, list):
        raise ConfigError(f"{source}: 'confirm_tools' must be a list")
    for i, elem in enumerate(names):
        if not isinstance(elem, str):
            raise ConfigError(
                f"{source}: confirm_tools[{i}]: expected string, got {type(elem).__name__}"
            )


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative paths against the config file's parent directory.

    Predefined callbacks (``@stdin``, ``@format``) and bare command names
    are left alone.
    """
    for key in ("save_images_dir", "save_speech_dir"):
        if key in config:
            p = Path(config[key]).expanduser()
            config[key] = str(p if p.is_absolute() else config_dir / p)

    callbacks = config.get("tool_callbacks")
    if callbacks:
        for name, spec in callbacks.items():
            if spec.startswith("@") or "/" not in spec:
                continue
            p = Path(spec).expanduser()
            callbacks[name] = str(p if p.is_absolute() else config_dir / p)


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    structured = {k: config.pop(k) for k in _STRUCTURED_KEYS if k in config}

    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}

    if "tool_callbacks" in structured:
        _validate_tool_callbacks(structured["tool_callbacks"], label)
        known["tool_callbacks"] = dict(structured["tool_callbacks"])
    if "confirm_tools" in structured:
        _validate_confirm_tools(structured["confirm_tools"], label)
        known["confirm_tools"] = list(structured["confirm_tools"])
    if "mcp_servers" in structured:
        servers = structured["mcp_servers"]
        if not isinstance(servers, dict):
            raise ConfigError(f"{label}: 'mcp_servers' must be a table")
        _validate_mcp_server_configs(servers, label)
        known["mcp_servers"] = servers

    return known


# --- MCP config helpers ---


_MCP_SERVER_FIELD_TYPES: dict[str, type | tuple[type, ...]] = {
    "command": str,
    "url": str,
    "args": list,
    "env": dict,
    "headers": dict,
    "transport": str,
}


def _validate_mcp_server_configs(servers: dict, source: str) -> None:
    """Validate structure and field types of MCP server configurations."""
    from .mcp_client import validate_server_name

    for name, cfg in servers.items():
        validate_server_name(name)
        if not isinstance(cfg, dict):
            raise ConfigError(f"{source}: mcp_servers.{name} must be a table")
        has_command = "command" in cfg
        has_url = "url" in cfg
        if not has_command and not has_url:
            raise ConfigError(
                f"{source}: mcp_servers.{name} must have 'command' or 'url'"
            )
        if has_command and has_url:
            raise ConfigError(
                f"{source}: mcp_servers.{name} cannot have both 'command' and 'url'"
            )

        prefix = f"{source}: mcp_servers.{name}"
        for field, expected in _MCP_SERVER_FIELD_TYPES.items():
            if field in cfg and not isinstance(cfg[field], expected):
                raise ConfigError(
                    f"{prefix}.{field}: expected {_type_name(expected)}, "
                    f"got {type(cfg[field]).__name__}"
                )

        if cfg.get("transport", "http") not in ("http", "sse"):
            raise ConfigError(f"{prefix}.transport: must be 'http' or 'sse'")

        if "args" in cfg:
            for i, elem in enumerate(cfg["args"]):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{prefix}.args[{i}]: expected string, "
                        f"got {type(elem).__name__}"
                    )

        for dict_field in ("env", "headers"):
            if dict_field in cfg:
                for k, v in cfg[dict_field].items():
                    if not isinstance(v, str):
                        raise ConfigError(
                            f"{prefix}.{dict_field}.{k}: expected string, "
                            f"got {type(v).__name__}"
                        )


def load_mcp_json(path: Path) -> dict[str, dict]:
    """Load MCP server configs from a .mcp.json file.

    Returns a dict of server_name -> server_config.
    Raises ConfigError on invalid JSON or structure.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"{path}: cannot read file: {e}")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: invalid JSON: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a JSON object at top level")

    servers_raw = data.get("mcpServers", {})
    if not isinstance(servers_raw, dict):
        raise ConfigError(f"{path}: 'mcpServers' must be a JSON object")

    _validate_mcp_server_configs(servers_raw, str(path))
    return servers_raw


def merge_mcp_configs(
    toml_servers: dict[str, dict] | None,
    json_servers: dict[str, dict] | None,
) -> dict[str, dict]:
    """Merge MCP server configs. The first argument wins on name collision."""
    merged: dict[str, dict] = {}
    if json_servers:
        merged.update(json_servers)
    if toml_servers:
        merged.update(toml_servers)
    return merged


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    Tables (``tool_callbacks``, ``mcp_servers``) merge by entry, project
    entries winning; ``confirm_tools`` lists are concatenated.
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    if global_config:
        _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "tether.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    global_mcp = global_config.pop("mcp_servers", None)
    project_mcp = project_config.pop("mcp_servers", None)
    global_callbacks = global_config.pop("tool_callbacks", {})
    project_callbacks = project_config.pop("tool_callbacks", {})
    global_confirm = global_config.pop("confirm_tools", [])
    project_confirm = project_config.pop("confirm_tools", [])

    merged = {**global_config, **project_config}

    mcp_servers = merge_mcp_configs(project_mcp, global_mcp)
    if mcp_servers:
        merged["mcp_servers"] = mcp_servers
    callbacks = {**global_callbacks, **project_callbacks}
    if callbacks:
        merged["tool_callbacks"] = callbacks
    confirm = list(dict.fromkeys(global_confirm + project_confirm))
    if confirm:
        merged["confirm_tools"] = confirm

    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to the argparse namespace where the CLI didn't.

    Scalar keys fill dests that are still _UNSET. Remaining sentinels are
    then replaced with the hardcoded defaults from _ARGPARSE_DEFAULTS.
    Config tool callbacks and confirmations are merged under the CLI ones.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color" or key in _STRUCTURED_KEYS:
            continue
        dest = _CONFIG_TO_ARGPARSE.get(key, key)
        if _is_unset(dest):
            setattr(args, dest, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)

    # CLI callback flags are "name:spec" strings; config entries come first
    # so a CLI flag for the same name overrides them.
    config_callbacks = [
        f"{name}:{spec}" for name, spec in config.get("tool_callbacks", {}).items()
    ]
    args.tool_callback = config_callbacks + list(args.tool_callback or [])
    args.tool_confirm = list(
        dict.fromkeys(config.get("confirm_tools", []) + list(args.tool_confirm or []))
    )
    args.mcp_servers = config.get("mcp_servers", {})


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# tether configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/tether.toml' if project else '~/.config/tether/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "lmstudio"          # "lmstudio" | "huggingface" | "openrouter" | "gemini"',
        '# model = "gemini-2.5-flash"',
        '# api_key = "..."                 # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        '# system_prompt = "You are a helpful assistant."',
        "# temperature = 0.7",
        "# top_p = 1.0",
        "# seed = 42",
        "# max_output_tokens = 8192",
        "# with_thinking = false",
        "# show_thinking = false",
        "",
        "# --- Tool calling ---",
        "# recurse = false                 # feed tool results back to the model",
        "# max_repeat = 5                  # identical calls allowed before stopping",
        "# force_confirm = false           # run destructive tools without asking",
        "# show_callback_results = false",
        "# timeout = 300                   # seconds for the whole generation",
        "# callback_timeout = 60           # seconds per local callback",
        '# confirm_tools = ["delete_file"]',
        "# tool_config = '{\"functionCallingConfig\": {\"mode\": \"ANY\"}}'",
        "# no_mcp = false",
        "",
        "# --- Media ---",
        "# save_images = false",
        '# save_images_dir = "~/Pictures/tether"',
        '# save_speech_dir = "~/Music/tether"',
        '# speech_voice = "Kore"          # voice used with --with-speech',
        '# speech_language = "en-US"',
        "# error_on_unsupported = false",
        "",
        "# --- Prompt ---",
        "# convert_urls = false",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
        "# --- Tool callbacks and MCP servers (tables must come last) ---",
        "",
        "# [tool_callbacks]",
        '# lookup = "~/bin/lookup.sh"',
        '# ask_user = "@stdin"',
        '# summarize = "@format=Summary of ${topic}"',
        "",
        "# [mcp_servers.filesystem]",
        '# command = "npx"',
        '# args = ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"]',
        '# env = { API_KEY = "sk-...", DEBUG = "true" }',
        "",
        "# [mcp_servers.remote-api]",
        '# url = "https://api.example.com/mcp"',
        '# headers = { Authorization = "Bearer token123" }',
        '# transport = "http"              # or "sse"',
        "",
    ]
    return "\n".join(lines)
