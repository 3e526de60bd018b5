import json
import tomllib
from pathlib import Path

import pytest

from workloop import __version__
from workloop.config import (
    ConfigError,
    WorkloopSettings,
    collapse_output_flags,
    dumps_toml,
    flatten_config,
    load_config,
    load_layer_file,
    parse_cli_value,
    resolve_config,
    save_layer_file,
    set_layer_value,
    unflatten_config,
    unset_layer_value,
    validate_layer,
)


def test_flatten_treats_lists_and_none_as_leaves() -> None:
    flat = flatten_config(
        {"claude": {"args": ["--x", "--y"], "command": None}, "verification": {"depth": "deep"}}
    )

    assert flat == {
        "claude.args": ["--x", "--y"],
        "claude.command": None,
        "verification.depth": "deep",
    }
    assert unflatten_config(flat)["claude"]["args"] == ["--x", "--y"]


def test_key_only_in_workspace_layer_surfaces_with_workspace_source() -> None:
    resolved = resolve_config(workspace={"notifications": {"url": "https://example.test/hook"}})

    item = resolved.effective["notifications.url"]
    assert item.value == "https://example.test/hook"
    assert item.source == "workspace"
    assert resolved.extras() == {"notifications.url": "https://example.test/hook"}


def test_last_non_none_layer_wins_and_records_provenance() -> None:
    resolved = resolve_config(
        user={"max_iterations": 10, "verification": {"depth": "quick"}},
        project={"max_iterations": 20},
        workspace={"verification": {"depth": "deep"}},
    )

    assert resolved.settings.max_iterations == 20
    assert resolved.source_of("max_iterations") == "project"
    assert resolved.settings.verification.depth == "deep"
    assert resolved.source_of("verification.depth") == "workspace"
    assert resolved.source_of("delay_seconds") == "default"


def test_cli_value_wins_only_for_its_own_key() -> None:
    resolved = resolve_config(
        user={"max_iterations": 10, "stagnation_threshold": 4},
        workspace={"max_iterations": 30},
        cli={"max_iterations": 3},
    )

    assert resolved.get("max_iterations") == 3
    assert resolved.source_of("max_iterations") == "cli"
    assert resolved.get("stagnation_threshold") == 4
    assert resolved.source_of("stagnation_threshold") == "user"


def test_unset_cli_flag_does_not_shadow_lower_layer() -> None:
    resolved = resolve_config(project={"delay_seconds": 7}, cli={"delay_seconds": None})

    assert resolved.settings.delay_seconds == 7.0
    assert resolved.source_of("delay_seconds") == "project"


def test_output_flags_collapse_with_explicit_output_first() -> None:
    assert collapse_output_flags({"verbose": True, "quiet": True, "output": "quiet"}) == {
        "output_level": "quiet"
    }
    assert collapse_output_flags({"verbose": True, "quiet": True}) == {"output_level": "verbose"}
    assert collapse_output_flags({"verbose": False, "quiet": True}) == {"output_level": "quiet"}
    assert collapse_output_flags({"verbose": False, "quiet": False, "output": None}) == {}

    resolved = resolve_config(user={"output_level": "verbose"}, cli={"quiet": True})
    assert resolved.settings.output_level == "quiet"
    assert resolved.source_of("output_level") == "cli"
    assert "quiet" not in resolved.effective


def test_resolver_coerces_lossless_strings() -> None:
    resolved = resolve_config(cli={"max_iterations": "3", "verification": {"auto_verify": "no"}})

    assert resolved.settings.max_iterations == 3
    assert resolved.settings.verification.auto_verify is False


def test_resolver_never_raises_on_bad_values() -> None:
    resolved = resolve_config(cli={"max_iterations": "many"})

    assert resolved.get("max_iterations") == "many"
    assert resolved.settings.max_iterations == WorkloopSettings().max_iterations


def test_validate_layer_rejects_wrong_types() -> None:
    with pytest.raises(ConfigError) as excinfo:
        validate_layer({"max_iterations": "lots"}, "project")
    assert excinfo.value.key == "max_iterations"

    with pytest.raises(ConfigError):
        validate_layer({"verification": "deep"}, "project")

    with pytest.raises(ConfigError):
        validate_layer({"verification": {"depth": "exhaustive"}}, "project")

    with pytest.raises(ConfigError):
        validate_layer({"max_iterations": {"nested": 1}}, "project")

    assert validate_layer({"custom": {"key": 1}}, "project") == {"custom": {"key": 1}}


def test_load_layer_file_handles_missing_and_malformed(tmp_path: Path) -> None:
    assert load_layer_file(tmp_path / "absent.toml") == {}

    broken = tmp_path / "broken.toml"
    broken.write_text("max_iterations = = 3\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_layer_file(broken)

    as_json = tmp_path / "layer.json"
    as_json.write_text(json.dumps({"claude": {"command": "mock"}}), encoding="utf-8")
    assert load_layer_file(as_json) == {"claude": {"command": "mock"}}


def test_save_layer_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / ".workloop.toml"
    data = set_layer_value({}, "claude.args", ["--dangerously-skip-permissions"])
    data = set_layer_value(data, "delay_seconds", 0.5)
    data = set_layer_value(data, "verification.depth", "deep")

    save_layer_file(path, data)
    loaded = load_layer_file(path)

    assert loaded["claude"]["args"] == ["--dangerously-skip-permissions"]
    assert loaded["delay_seconds"] == 0.5
    assert loaded["verification"]["depth"] == "deep"
    assert "[verification]" in path.read_text(encoding="utf-8")

    trimmed = unset_layer_value(loaded, "verification.depth")
    assert "depth" not in trimmed.get("verification", {})
    with pytest.raises(ConfigError):
        unset_layer_value(trimmed, "verification.depth")


def test_dumps_toml_output_parses() -> None:
    rendered = dumps_toml(WorkloopSettings().to_dict())
    parsed = tomllib.loads(rendered)

    assert parsed["claude"]["command"] == "claude"
    assert parsed["status_watch"]["debounce_seconds"] == 2.0
    assert parsed["completion_markers"][1] == "**Remaining**: 0"


def test_parse_cli_value_uses_default_types() -> None:
    assert parse_cli_value("max_iterations", "12") == 12
    assert parse_cli_value("colors", "false") is False
    assert parse_cli_value("claude.args", "--a, --b") == ["--a", "--b"]
    assert parse_cli_value("claude.args", '["--a"]') == ["--a"]
    assert parse_cli_value("custom.flag", "true") is True
    with pytest.raises(ConfigError):
        parse_cli_value("max_iterations", "twelve")


def test_load_config_reads_user_and_project_files(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    home = tmp_path / "home"
    home.mkdir()
    (home / "config.toml").write_text("max_iterations = 9\n", encoding="utf-8")
    project = tmp_path / "project"
    project.mkdir()
    (project / ".workloop.toml").write_text(
        "[claude]\ncommand = \"mock-claude\"\n", encoding="utf-8"
    )
    monkeypatch.setenv("WORKLOOP_CONFIG_HOME", str(home))

    resolved = load_config(cwd=project, workspace_layer={"delay_seconds": 0})

    assert resolved.settings.max_iterations == 9
    assert resolved.source_of("max_iterations") == "user"
    assert resolved.settings.claude.command == "mock-claude"
    assert resolved.source_of("claude.command") == "project"
    assert resolved.settings.delay_seconds == 0.0
    assert resolved.source_of("delay_seconds") == "workspace"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]


def test_effective_values_are_immutable() -> None:
    args = ["--model", "opus"]
    resolved = resolve_config(project={"claude": {"args": args}})

    item = resolved.effective["claude.args"]
    assert item.value == ("--model", "opus")
    args.append("--later")
    assert item.value == ("--model", "opus")
    assert resolved.settings.claude.args == ["--model", "opus"]
    with pytest.raises(TypeError):
        resolved.effective["claude.args"] = item  # type: ignore[index]
