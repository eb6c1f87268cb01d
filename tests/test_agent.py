"""Tests for the tether command line: parsing, wiring and exit codes."""

import argparse
import io
import json
import sys
from unittest.mock import patch

import pytest

from tether import agent
from tether.history import InlineMedia, Text
from tether.report import ConfigError
from tether.resolver import EXECUTABLE, STDIN_PROMPT, TEMPLATE_FORMAT
from tether.stream import Finish, FunctionCallDelta, TextDelta


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeModelClient:
    """Stands in for ModelClient; replays scripted passes."""

    script: list = []
    instances: list = []

    def __init__(self, provider, model_id, **kwargs):
        self.provider = provider
        self.model_id = model_id
        self.kwargs = kwargs
        self.requests = []
        FakeModelClient.instances.append(self)

    def stream_generate(self, messages, tools, options):
        self.requests.append((messages, tools, options))
        passes = FakeModelClient.script
        script = passes.pop(0) if len(passes) > 1 else passes[0]
        return iter(list(script))


@pytest.fixture
def cli(tmp_path, monkeypatch):
    """Run main() in an isolated cwd with a fake model client."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setattr(agent, "read_stdin", lambda: None)
    monkeypatch.setattr(agent, "ModelClient", FakeModelClient)
    FakeModelClient.instances = []

    def run(*argv, script=None):
        FakeModelClient.script = list(script or [[TextDelta("ok"), Finish("stop")]])
        monkeypatch.setattr(sys, "argv", ["tether", *argv])
        with pytest.raises(SystemExit) as exc:
            agent.main()
        return exc.value.code

    return run


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class TestParser:
    def test_positional_prompt(self):
        args = agent.build_parser().parse_args(["what time is it"])
        assert args.prompt == "what time is it"

    def test_repeatable_flags(self):
        args = agent.build_parser().parse_args(
            [
                "--tool-callback",
                "a:@stdin",
                "--tool-callback",
                "b:@format",
                "--tool-confirm",
                "a",
                "-f",
                "x.txt",
                "-f",
                "y.png",
                "-vv",
                "q",
            ]
        )
        assert args.tool_callback == ["a:@stdin", "b:@format"]
        assert args.tool_confirm == ["a"]
        assert args.file == ["x.txt", "y.png"]
        assert args.verbose == 2

    def test_color_flags_exclusive(self):
        with pytest.raises(SystemExit):
            agent.build_parser().parse_args(["--color", "--no-color", "q"])

    def test_provider_choices(self):
        with pytest.raises(SystemExit):
            agent.build_parser().parse_args(["--provider", "acme", "q"])


# ---------------------------------------------------------------------------
# Setup helpers
# ---------------------------------------------------------------------------


class TestLoadDeclarations:
    def test_empty(self):
        assert agent.load_declarations(None) == ([], {})

    def test_bare_declarations(self):
        tools, schemas = agent.load_declarations(
            json.dumps(
                [
                    {
                        "name": "weather",
                        "description": "Get weather",
                        "parameters": {
                            "type": "object",
                            "properties": {"city": {"type": "string"}},
                        },
                    },
                    {"name": "now"},
                ]
            )
        )
        assert [t["function"]["name"] for t in tools] == ["weather", "now"]
        assert tools[0]["type"] == "function"
        assert schemas["weather"]["properties"]["city"] == {"type": "string"}
        assert schemas["now"] == {"type": "object", "properties": {}}

    def test_openai_format(self):
        entry = {"type": "function", "function": {"name": "f", "parameters": {}}}
        tools, schemas = agent.load_declarations(json.dumps([entry]))
        assert tools[0]["function"]["name"] == "f"
        assert "f" in schemas

    def test_from_file(self, tmp_path):
        path = tmp_path / "tools.json"
        path.write_text(json.dumps([{"name": "f"}]), encoding="utf-8")
        tools, _ = agent.load_declarations(f"@{path}")
        assert tools[0]["function"]["name"] == "f"

    @pytest.mark.parametrize(
        "value",
        ["{not json", '"string"', "[1]", '[{"description": "no name"}]', '[{"name": "a"}, {"name": "a"}]'],
    )
    def test_invalid(self, value):
        with pytest.raises(ConfigError):
            agent.load_declarations(value)


class TestBuildBindings:
    def test_kinds_and_confirmation(self):
        bindings = agent.build_bindings(
            ["ask:@stdin", "fmt:@format=${x}", "run:/bin/run"], ["run", "ask"]
        )
        assert bindings["ask"].kind == STDIN_PROMPT
        assert not bindings["ask"].requires_confirmation
        assert bindings["fmt"].kind == TEMPLATE_FORMAT
        assert bindings["run"].kind == EXECUTABLE
        assert bindings["run"].requires_confirmation

    def test_later_flag_wins(self):
        bindings = agent.build_bindings(["a:@stdin", "a:@format"], [])
        assert bindings["a"].kind == TEMPLATE_FORMAT


class TestResolveApiKey:
    def test_lmstudio_needs_none(self):
        assert agent.resolve_api_key("lmstudio", None) is None

    def test_env_var(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "g-key")
        assert agent.resolve_api_key("gemini", None) == "g-key"

    def test_flag_beats_env(self, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "env")
        assert agent.resolve_api_key("openrouter", "flag") == "flag"

    def test_missing(self, monkeypatch):
        monkeypatch.delenv("HF_TOKEN", raising=False)
        with pytest.raises(ConfigError, match="HF_TOKEN"):
            agent.resolve_api_key("huggingface", None)


class TestParseToolConfig:
    @pytest.mark.parametrize(
        "value, expected",
        [("auto", "auto"), ("NONE", "none"), ("any", "required"), ('"required"', "required")],
    )
    def test_modes(self, value, expected):
        assert agent.parse_tool_config(value) == (expected, None)

    def test_unset(self):
        assert agent.parse_tool_config(None) == (None, None)

    def test_function_name(self):
        choice, allowed = agent.parse_tool_config("lookup")
        assert choice == {"type": "function", "function": {"name": "lookup"}}
        assert allowed == ["lookup"]

    def test_calling_config_any_single_function(self):
        value = json.dumps(
            {"functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": ["f"]}}
        )
        choice, allowed = agent.parse_tool_config(value)
        assert choice == {"type": "function", "function": {"name": "f"}}
        assert allowed == ["f"]

    def test_calling_config_any_several_functions(self):
        value = json.dumps(
            {"function_calling_config": {"mode": "any", "allowed_function_names": ["f", "g"]}}
        )
        assert agent.parse_tool_config(value) == ("required", ["f", "g"])

    def test_openai_choice(self):
        value = json.dumps({"type": "function", "function": {"name": "f"}})
        choice, allowed = agent.parse_tool_config(value)
        assert choice["function"]["name"] == "f"
        assert allowed == ["f"]

    def test_from_file(self, tmp_path):
        path = tmp_path / "tool-config.json"
        path.write_text('{"functionCallingConfig": {"mode": "NONE"}}', encoding="utf-8")
        assert agent.parse_tool_config(f"@{path}") == ("none", None)

    @pytest.mark.parametrize(
        "value",
        [
            '{"functionCallingConfig": {"mode": "SOMETIMES"}}',
            '{"functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": "f"}}',
            '{"type": "function", "function": {}}',
            "[1, 2]",
        ],
    )
    def test_invalid(self, value):
        with pytest.raises(ConfigError):
            agent.parse_tool_config(value)


class TestGenerationOptions:
    def _args(self, **kw):
        defaults = dict(
            provider="gemini",
            temperature=None,
            top_p=None,
            seed=None,
            max_output_tokens=None,
            with_thinking=False,
            with_images=False,
            with_speech=False,
            speech_voice=None,
            speech_language=None,
        )
        defaults.update(kw)
        return argparse.Namespace(**defaults)

    def test_text_only(self):
        options = agent.generation_options(self._args(temperature=0.5))
        assert options["temperature"] == 0.5
        assert "modalities" not in options
        assert "audio" not in options

    def test_images(self):
        options = agent.generation_options(self._args(with_images=True))
        assert options["modalities"] == ["text", "image"]

    def test_speech_default_voice(self):
        options = agent.generation_options(self._args(with_speech=True))
        assert options["modalities"] == ["text", "audio"]
        assert options["audio"] == {"voice": "Kore", "format": "pcm16"}

    def test_speech_voice_and_language(self):
        options = agent.generation_options(
            self._args(
                provider="openrouter",
                with_speech=True,
                speech_voice="Puck",
                speech_language="fr-FR",
            )
        )
        assert options["audio"] == {"voice": "Puck", "format": "pcm16", "language": "fr-FR"}

    def test_speech_fallback_voice(self):
        options = agent.generation_options(self._args(provider="openrouter", with_speech=True))
        assert options["audio"]["voice"] == "alloy"


def _json_response(payload):
    return io.BytesIO(json.dumps(payload).encode())


class TestListModels:
    def test_lmstudio(self):
        payload = {
            "models": [
                {"key": "qwen3", "type": "llm", "loaded_instances": [{"id": "qwen3"}]},
                {"key": "nomic-embed", "type": "embedding", "loaded_instances": []},
            ]
        }
        with patch("urllib.request.urlopen", return_value=_json_response(payload)) as urlopen:
            models = agent.list_models("lmstudio", None, None)
        assert models == [("qwen3", "llm, loaded"), ("nomic-embed", "embedding, not loaded")]
        assert urlopen.call_args.args[0].full_url == "http://127.0.0.1:1234/api/v1/models"

    def test_openrouter_sends_key(self):
        payload = {"data": [{"id": "x/y", "name": "X: Y", "context_length": 32768}]}
        with patch("urllib.request.urlopen", return_value=_json_response(payload)) as urlopen:
            models = agent.list_models("openrouter", None, "or-key")
        assert models == [("x/y", "X: Y, context 32768 tokens")]
        assert urlopen.call_args.args[0].get_header("Authorization") == "Bearer or-key"

    def test_gemini_follows_pages(self):
        pages = [
            _json_response(
                {
                    "models": [
                        {
                            "name": "models/gemini-2.5-flash",
                            "displayName": "Gemini 2.5 Flash",
                            "inputTokenLimit": 1048576,
                            "outputTokenLimit": 65536,
                            "supportedGenerationMethods": ["generateContent", "countTokens"],
                        }
                    ],
                    "nextPageToken": "p2",
                }
            ),
            _json_response({"models": [{"name": "models/embedding-001"}]}),
        ]
        with patch("urllib.request.urlopen", side_effect=pages) as urlopen:
            models = agent.list_models("gemini", None, "g-key")
        assert [name for name, _ in models] == ["gemini-2.5-flash", "embedding-001"]
        assert models[0][1] == (
            "Gemini 2.5 Flash, input 1048576 tokens, output 65536 tokens, "
            "actions: generateContent, countTokens"
        )
        assert urlopen.call_args.args[0].full_url.endswith("&pageToken=p2")

    def test_huggingface_unsupported(self):
        with pytest.raises(ConfigError, match="not supported"):
            agent.list_models("huggingface", None, "hf")


class TestBuildHistory:
    def _args(self, **kw):
        defaults = dict(prompt=None, file=[], override_mimetype=[], convert_urls=False, verbose=0)
        defaults.update(kw)
        return argparse.Namespace(**defaults)

    def test_stdin_and_prompt(self, monkeypatch):
        monkeypatch.setattr(agent, "read_stdin", lambda: "piped")
        history, text = agent.build_history(self._args(prompt="explain"))
        assert text == "piped\n\nexplain"
        assert history.turns[0].parts == [Text("piped\n\nexplain")]

    def test_attachments_before_prompt(self, monkeypatch, tmp_path):
        monkeypatch.setattr(agent, "read_stdin", lambda: None)
        img = tmp_path / "a.png"
        img.write_bytes(b"\x89PNG")
        history, _ = agent.build_history(self._args(prompt="what is this", file=[str(img)]))
        parts = history.turns[0].parts
        assert parts[0] == InlineMedia(b"\x89PNG", "image/png")
        assert parts[1] == Text("what is this")

    def test_nothing_to_send(self, monkeypatch):
        monkeypatch.setattr(agent, "read_stdin", lambda: None)
        with pytest.raises(ConfigError, match="prompt is required"):
            agent.build_history(self._args())


# ---------------------------------------------------------------------------
# main()
# ---------------------------------------------------------------------------


class TestMain:
    def test_version(self, cli, capsys):
        assert cli("--version") == 0
        assert capsys.readouterr().out.strip()

    def test_plain_answer(self, cli, capsys):
        assert cli("--model", "local", "hi") == 0
        assert "ok" in capsys.readouterr().out
        client = FakeModelClient.instances[0]
        assert client.provider == "lmstudio"
        assert client.model_id == "local"

    def test_missing_model_for_remote_provider(self, cli, capsys):
        assert cli("--provider", "gemini", "hi") == 1
        assert "--model is required" in capsys.readouterr().err

    def test_missing_prompt(self, cli, capsys):
        assert cli("--model", "local") == 1
        assert "prompt is required" in capsys.readouterr().err

    def test_bad_max_repeat(self, cli):
        assert cli("--model", "local", "--max-repeat", "0", "hi") == 1

    def test_non_stop_finish_exit_code(self, cli, capsys):
        code = cli("--model", "local", "hi", script=[[TextDelta("x"), Finish("length")]])
        assert code == 1
        assert "non-stop reason: length" in capsys.readouterr().err

    def test_tool_callback_with_recursion(self, cli, capsys):
        script = [
            [FunctionCallDelta("echo", {"word": "hey"}, call_id="c1"), Finish("stop")],
            [TextDelta("done"), Finish("stop")],
        ]
        code = cli(
            "--model",
            "local",
            "--tools",
            json.dumps([{"name": "echo", "parameters": {"type": "object"}}]),
            "--tool-callback",
            "echo:@format=said ${word}",
            "-r",
            "hi",
            script=script,
        )
        assert code == 0
        client = FakeModelClient.instances[0]
        assert len(client.requests) == 2
        messages, tools, options = client.requests[1]
        assert tools[0]["function"]["name"] == "echo"
        assert messages[-1]["role"] == "tool"
        assert json.loads(messages[-1]["content"]) == {"output": "said hey"}

    def test_options_forwarded(self, cli):
        cli(
            "--model",
            "local",
            "--temperature",
            "0.3",
            "--seed",
            "7",
            "-t",
            "-s",
            "be terse",
            "hi",
        )
        messages, _, options = FakeModelClient.instances[0].requests[0]
        assert options["temperature"] == 0.3
        assert options["seed"] == 7
        assert options["include_thoughts"] is True
        assert messages[0] == {"role": "system", "content": "be terse"}

    def test_config_file_applies(self, cli, tmp_path):
        (tmp_path / "tether.toml").write_text(
            'model = "from-config"\nsystem_prompt = "cfg"\n', encoding="utf-8"
        )
        assert cli("hi") == 0
        client = FakeModelClient.instances[0]
        assert client.model_id == "from-config"
        assert client.requests[0][0][0]["content"] == "cfg"

    def test_report_written(self, cli, tmp_path):
        report = tmp_path / "out.json"
        assert cli("--model", "local", "--report", str(report), "hi") == 0
        data = json.loads(report.read_text())
        assert data["result"]["outcome"] == "success"
        assert data["prompt"] == "hi"
        assert data["stats"]["passes"] == 1

    def test_report_written_on_setup_error(self, cli, tmp_path):
        report = tmp_path / "out.json"
        assert cli("--provider", "gemini", "--report", str(report), "hi") == 1
        data = json.loads(report.read_text())
        assert data["result"]["exit_code"] == 1
        assert "--model is required" in data["result"]["error_message"]

    def test_init_config_project(self, cli, tmp_path):
        assert cli("--init-config", "--project") == 0
        assert (tmp_path / "tether.toml").read_text().startswith("# tether configuration")
        assert cli("--init-config", "--project") == 1

    def test_project_requires_init_config(self, cli):
        assert cli("--project") == 2

    def test_list_models(self, cli, capsys, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "or-key")
        payload = {"data": [{"id": "x/y", "name": "X: Y"}]}
        with patch("urllib.request.urlopen", return_value=_json_response(payload)):
            assert cli("--provider", "openrouter", "--list-models") == 0
        assert "x/y" in capsys.readouterr().out
        assert FakeModelClient.instances == []

    def test_tool_config_narrows_tools(self, cli):
        declarations = json.dumps([{"name": "f"}, {"name": "g"}])
        tool_config = json.dumps(
            {"functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": ["g"]}}
        )
        assert cli("--model", "local", "--tools", declarations, "--tool-config", tool_config, "hi") == 0
        _, tools, options = FakeModelClient.instances[0].requests[0]
        assert [t["function"]["name"] for t in tools] == ["g"]
        assert options["tool_choice"] == {"type": "function", "function": {"name": "g"}}

    def test_tool_config_undeclared_function(self, cli, capsys):
        code = cli("--model", "local", "--tools", '[{"name": "f"}]', "--tool-config", "ghost", "hi")
        assert code == 1
        assert "undeclared functions: ghost" in capsys.readouterr().err

    def test_images_drop_system_prompt(self, cli, capsys):
        assert cli("--model", "local", "--with-images", "-s", "be terse", "draw a cat") == 0
        messages, _, options = FakeModelClient.instances[0].requests[0]
        assert all(m["role"] != "system" for m in messages)
        assert options["modalities"] == ["text", "image"]
        assert "system prompt is not used" in capsys.readouterr().err

    def test_images_and_speech_exclusive(self, cli):
        assert cli("--model", "local", "--with-images", "--with-speech", "hi") == 2
