"""Tests for the command-line entry point."""

from unittest.mock import patch

import pytest

from multish.config import HeaderMode, Mode, load_config
from multish.errors import RunAborted
from multish.runner import build_config, build_parser, main


@pytest.fixture(autouse=True)
def no_user_config(monkeypatch, tmp_path):
    """Keep the developer's own config file out of the tests."""
    monkeypatch.delenv("MULTISH_CONFIG", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))


class TestUsageErrors:
    """Exit code 65 for bad invocations."""

    def test_missing_hosts(self, capsys):
        assert main(["-c", "uptime"]) == 65
        assert "host" in capsys.readouterr().err

    def test_missing_code(self):
        assert main(["web1"]) == 65

    def test_code_and_file_exclusive(self, tmp_path):
        script = tmp_path / "s.sh"
        script.write_text("true\n")
        assert main(["-c", "uptime", "-f", str(script), "web1"]) == 65

    def test_invalid_header_mode(self, capsys):
        assert main(["-c", "uptime", "-H", "fancy", "web1"]) == 65
        assert "header mode" in capsys.readouterr().err

    def test_bad_fanout(self):
        assert main(["-c", "uptime", "-p", "0", "web1"]) == 65

    def test_negative_timeout(self):
        assert main(["-c", "uptime", "-t", "-1", "web1"]) == 65

    def test_unknown_flag(self):
        assert main(["-c", "uptime", "--bogus", "web1"]) == 65

    def test_duplicate_hosts_with_file_output(self):
        assert main(["-c", "uptime", "-o", "web1", "web1"]) == 65

    def test_missing_script(self, tmp_path):
        assert main(["-f", str(tmp_path / "none.sh"), "web1"]) == 65

    def test_config_value_of_wrong_type(self, tmp_path, capsys):
        config = tmp_path / "multish.yaml"
        config.write_text("defaults:\n  fanout: lots\n")
        assert main(["--config", str(config), "-n", "-c", "id", "web1"]) == 65
        assert "fanout" in capsys.readouterr().err


class TestEnvironmentErrors:
    """Exit code 1 when local prerequisites are missing."""

    def test_windows_without_display(self, monkeypatch):
        monkeypatch.delenv("DISPLAY", raising=False)
        with patch("multish.runner.shutil.which", return_value="/usr/bin/ssh"):
            assert main(["-c", "uptime", "-w", "web1"]) == 1

    def test_no_ssh_client(self):
        with patch("multish.runner.shutil.which", return_value=None):
            assert main(["-c", "uptime", "web1"]) == 1


class TestDryRun:
    def test_prints_one_command_per_host(self, capsys):
        assert main(["-n", "-c", "uptime", "-t", "3", "web1", "web2"]) == 0
        assert capsys.readouterr().out.splitlines() == [
            "ssh -o ConnectTimeout=3 -T web1 uptime",
            "ssh -o ConnectTimeout=3 -T web2 uptime",
        ]

    def test_host_groups_from_config(self, capsys, tmp_path):
        config = tmp_path / "multish.yaml"
        config.write_text("defaults:\n  user: ops\nhost_groups:\n  db: [db1, db2]\n")
        assert main(["--config", str(config), "-n", "-c", "id", "@db"]) == 0
        assert capsys.readouterr().out.splitlines() == [
            "ssh -o ConnectTimeout=10 -l ops -T db1 id",
            "ssh -o ConnectTimeout=10 -l ops -T db2 id",
        ]


class TestBuildConfig:
    def test_flags_override_file_defaults(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("defaults:\n  mode: serial\n  fanout: 4\n  ssh_options: [A=1]\n")
        args = build_parser().parse_args(
            ["-c", "x", "-m", "parallel", "-H", "none", "--ssh-option", "B=2", "h"]
        )
        config = build_config(args, load_config(path))
        assert config.mode is Mode.PARALLEL
        assert config.fanout == 4
        assert config.header_mode is HeaderMode.NONE
        assert config.ssh.options == ("A=1", "B=2")


class TestRun:
    """Exit codes after the run."""

    def test_success_reports_failed_hosts(self, capsys):
        from multish.executor import RunResult

        async def fake_run(self, tasks):
            return [RunResult(host="a", exit_code=0), RunResult(host="b", exit_code=2)]

        with patch("multish.runner.shutil.which", return_value="/usr/bin/ssh"), \
                patch("multish.scheduler.Scheduler.run", fake_run):
            assert main(["-c", "uptime", "a", "b"]) == 0
        assert "Failed hosts: b" in capsys.readouterr().err

    def test_abort_exits_130(self):
        async def fake_run(self, tasks):
            raise RunAborted("Interrupted on a", host="a")

        with patch("multish.runner.shutil.which", return_value="/usr/bin/ssh"), \
                patch("multish.scheduler.Scheduler.run", fake_run):
            assert main(["-m", "serial", "-c", "uptime", "a", "b"]) == 130
