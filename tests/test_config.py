from pathlib import Path

import pytest

from vibe_flow.config import ServerConfig
from vibe_flow.config import load_server_config
from vibe_flow.main import build_parser
from vibe_flow.main import resolve_config


def test_defaults_without_file() -> None:
    config = load_server_config(None)

    assert config.port == 3001
    assert config.term == "xterm-color"
    assert (config.default_cols, config.default_rows) == (80, 30)
    assert config.repo_root is None
    assert set(config.assistant_commands) == {"claude", "codex", "gemini"}


def test_load_yaml_with_aliases(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    path = tmp_path / "server.yaml"
    path.write_text(
        f"""
host: 0.0.0.0
port: 4000
state_db: {tmp_path / 'state.db'}
repo: {repo}
ai_tool: codex
shell: /bin/bash
assistant_commands:
  codex: codex --full-auto
""",
        encoding="utf-8",
    )

    config = load_server_config(path)

    assert config.host == "0.0.0.0"
    assert config.port == 4000
    assert config.expanded_state_path() == tmp_path / "state.db"
    assert config.expanded_repo_root() == repo.resolve()
    assert config.shell_argv() == ["/bin/bash"]
    assert config.assistant_commands == {"codex": "codex --full-auto"}


def test_blank_repo_is_unset(tmp_path: Path) -> None:
    path = tmp_path / "server.yaml"
    path.write_text("repo: ''\n", encoding="utf-8")

    assert load_server_config(path).repo_root is None


def test_invalid_config_names_the_file(tmp_path: Path) -> None:
    path = tmp_path / "server.yaml"
    path.write_text("default_cols: 0\n", encoding="utf-8")

    with pytest.raises(ValueError, match="server.yaml"):
        load_server_config(path)


def test_shell_falls_back_to_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SHELL", "/usr/bin/zsh")
    assert ServerConfig().shell_argv() == ["/usr/bin/zsh"]

    monkeypatch.delenv("SHELL")
    assert ServerConfig().shell_argv() == ["/bin/sh"]


def test_cli_flags_override_file(tmp_path: Path) -> None:
    path = tmp_path / "server.yaml"
    path.write_text("port: 4000\nhost: 0.0.0.0\n", encoding="utf-8")

    args = build_parser().parse_args(
        ["--config", str(path), "--port", "5000", "--db", str(tmp_path / "cli.db"), "--repo", str(tmp_path)]
    )
    config = resolve_config(args)

    assert config.port == 5000
    assert config.host == "0.0.0.0"
    assert config.state_path == tmp_path / "cli.db"
    assert config.repo_root == tmp_path


def test_package_exports_public_names() -> None:
    import vibe_flow

    for name in vibe_flow.__all__:
        assert hasattr(vibe_flow, name)
    assert vibe_flow.load_server_config is load_server_config
