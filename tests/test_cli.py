from __future__ import annotations

import pytest

from taskbox.cli import COMMANDS, build_parser, main


def test_create_arguments() -> None:
    args = build_parser().parse_args(
        [
            "create",
            "https://github.com/acme/widget",
            "--branch",
            "feature/x",
            "--no-install",
            "--port",
            "3000",
            "--port",
            "8080",
            "--duration",
            "30 minutes",
            "--keep-alive",
        ]
    )

    assert args.command == "create"
    assert args.repo_url == "https://github.com/acme/widget"
    assert args.branch == "feature/x"
    assert args.no_install is True
    assert args.ports == [3000, 8080]
    assert args.duration == "30 minutes"
    assert args.keep_alive is True
    assert args.agent == "claude"


def test_create_defaults() -> None:
    args = build_parser().parse_args(["create", "https://github.com/acme/widget"])

    assert args.ports is None
    assert args.no_install is False
    assert args.github_token is None


def test_every_subcommand_has_a_handler() -> None:
    parser = build_parser()
    for command, extra in (("stop", ["box"]), ("health", ["box"]), ("restart-dev", ["box"])):
        args = parser.parse_args([command, *extra])
        assert args.command in COMMANDS
        assert args.sandbox_id == "box"


def test_main_without_command_exits_with_usage(
    tmp_path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.chdir(tmp_path)

    with pytest.raises(SystemExit) as excinfo:
        main([])

    assert excinfo.value.code == 1
    assert "usage: taskbox" in capsys.readouterr().out
