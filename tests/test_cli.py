"""
Command-line interface tests.

Run with full visibility:
    pytest tests/test_cli.py -v -s
"""

from __future__ import annotations

import pytest

from vm_console_tools import cli


def _report(label: str, detail: str = "") -> None:
    if detail:
        print(f"  [{label}] {detail}")
    else:
        print(f"  [{label}]")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in cli._OVERRIDES.values():
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("CONSOLE_HOST_ALIASES", raising=False)


class TestCLI:

    def test_serial_list(self, capsys):
        assert cli.main(["serial-list"]) == 0
        out = capsys.readouterr().out
        assert "serial ports" in out.lower()

    def test_missing_target_is_config_error(self, capsys):
        _report("TEST", "serial-login without --target or CONSOLE_TARGET_NAME")
        code = cli.main(["serial-login", "--serial-port", "/dev/does-not-exist-42"])
        err = capsys.readouterr().err
        assert code == 2
        assert "CONSOLE_TARGET_NAME" in err
        _report("PASS", err.strip())

    def test_bad_duration_flag(self, capsys):
        code = cli.main([
            "serial-login", "--serial-port", "/dev/does-not-exist-42",
            "--target", "vm-1", "--login-timeout", "soon",
        ])
        assert code == 2
        assert "CONSOLE_LOGIN_TIMEOUT" in capsys.readouterr().err

    def test_unreachable_port_reports_outcome(self, capsys):
        _report("TEST", "serial-login on a missing device")
        code = cli.main([
            "serial-login", "--serial-port", "/dev/does-not-exist-42", "--target", "vm-1",
        ])
        captured = capsys.readouterr()
        assert code == 1
        assert "transport-error" in captured.out
        assert "does-not-exist-42" in captured.err
        _report("PASS", captured.out.strip())

    def test_flags_override_environment(self, monkeypatch):
        monkeypatch.setenv("CONSOLE_TARGET_NAME", "from-env")
        monkeypatch.setenv("CONSOLE_USERNAME", "env-user")
        parser_args = type("Args", (), {
            "target": "from-flag", "user": None, "password": None,
            "escalation_command": None, "connect_timeout": None,
            "probe_timeout": "2s", "login_timeout": None,
            "login_retry_timeout": None, "configure_timeout": None,
            "alias": ["localhost", "cloud"],
        })()
        cfg = cli.build_config(parser_args)
        assert cfg.target.name == "from-flag"
        assert cfg.target.aliases == ("localhost", "cloud")
        assert cfg.credentials.username == "env-user"
        assert cfg.timeouts.probe_s == 2.0

    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            cli.main([])
