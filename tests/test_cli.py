"""Tests for the orchestra command line."""

from pathlib import Path

import pytest
import yaml

from orchestra.__main__ import build_parser, main
from orchestra.config import repo_config_path


class TestParser:
    def test_create_defaults(self):
        args = build_parser().parse_args(["create"])
        assert args.count == 1
        assert args.tier is None
        assert args.allow_fallback is False
        assert args.no_session is False

    def test_create_options(self):
        args = build_parser().parse_args(
            ["create", "-n", "3", "--tier", "container", "--allow-fallback", "--no-session"]
        )
        assert (args.count, args.tier, args.allow_fallback, args.no_session) == (3, "container", True, True)

    @pytest.mark.parametrize("count", ["0", "-2", "many"])
    def test_create_rejects_bad_count(self, count):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["create", "-n", count])

    def test_unknown_tier(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["create", "--tier", "hypervisor"])

    def test_config_needs_subcommand(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["config"])

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage:" in capsys.readouterr().out


class TestConfigCommand:
    def test_set_then_show(self, tmp_path: Path, capsys):
        repo = str(tmp_path)
        assert main(["--repo", repo, "config", "set", "isolation.minimum_tier", "container"]) == 0
        assert main(["--repo", repo, "config", "set", "max_batch", "8"]) == 0

        saved = yaml.safe_load(repo_config_path(tmp_path).read_text())
        assert saved == {"isolation": {"minimum_tier": "container"}, "max_batch": 8}

        capsys.readouterr()
        assert main(["--repo", repo, "config", "show"]) == 0
        shown = yaml.safe_load(capsys.readouterr().out)
        assert shown["max_batch"] == 8
        assert shown["isolation"]["minimum_tier"] == "container"

    def test_unknown_key(self, tmp_path: Path, capsys):
        assert main(["--repo", str(tmp_path), "config", "set", "colour", "blue"]) == 1
        assert "Unknown config key" in capsys.readouterr().err
        assert not repo_config_path(tmp_path).exists()

    def test_invalid_value_not_written(self, tmp_path: Path, capsys):
        assert main(["--repo", str(tmp_path), "config", "set", "max_batch", "0"]) == 1
        assert not repo_config_path(tmp_path).exists()


class TestAgentCommands:
    def test_count_above_batch_limit(self, tmp_path: Path, capsys):
        main(["--repo", str(tmp_path), "config", "set", "max_batch", "2"])
        assert main(["--repo", str(tmp_path), "create", "-n", "3"]) == 1
        assert "between 1 and 2" in capsys.readouterr().err
        assert not (tmp_path / ".worktrees").exists()

    def test_create_outside_repository(self, tmp_path: Path, capsys):
        plain = tmp_path / "plain"
        plain.mkdir()
        assert main(["--repo", str(plain), "create", "--no-session"]) == 1
        assert "not a git repository" in capsys.readouterr().err
        assert not (plain / ".worktrees").exists()

    def test_create_list_rename_delete(self, git_repo: Path, capsys):
        repo = str(git_repo)
        assert main(["--repo", repo, "create", "-n", "2", "--no-session"]) == 0
        out = capsys.readouterr().out
        assert "Created alpha (agent-alpha, none)" in out
        assert "Created bravo (agent-bravo, none)" in out

        assert main(["--repo", repo, "list"]) == 0
        out = capsys.readouterr().out
        assert "alpha" in out and "bravo" in out

        assert main(["--repo", repo, "rename", "bravo", "docs"]) == 0
        assert "Renamed bravo -> docs (agent-docs)" in capsys.readouterr().out
        assert (git_repo / ".worktrees" / "agent-docs").is_dir()

        assert main(["--repo", repo, "delete", "1"]) == 0
        assert "Deleted alpha" in capsys.readouterr().out
        assert not (git_repo / ".worktrees" / "agent-alpha").exists()

    def test_list_empty(self, git_repo: Path, capsys):
        assert main(["--repo", str(git_repo), "list"]) == 0
        assert "No agents." in capsys.readouterr().out

    def test_delete_unknown(self, git_repo: Path, capsys):
        assert main(["--repo", str(git_repo), "delete", "zulu"]) == 1
        assert "No agent 'zulu'" in capsys.readouterr().err
