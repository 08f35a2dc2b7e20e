"""
Brief: Tests for the dforever command-line entry point.

Inputs:
  - None

Outputs:
  - None
"""

import dforever.main as main_mod

from conftest import FULL_CONFIG


def test_default_config_path(monkeypatch):
    """
    Brief: $DPACK_FOREVER_CONFIG wins; otherwise ~/.dforever.yml.

    Inputs:
      - monkeypatch: pytest fixture

    Outputs:
      - None
    """
    assert main_mod.default_config_path({"DPACK_FOREVER_CONFIG": "/etc/df.yml"}) == "/etc/df.yml"
    monkeypatch.setenv("HOME", "/home/bob")
    assert main_mod.default_config_path({}) == "/home/bob/.dforever.yml"


def test_parser_flags():
    """
    Brief: CLI flags parse into the expected namespace.

    Inputs:
      - None

    Outputs:
      - None
    """
    args = main_mod.build_parser().parse_args(
        ["--config", "x.yml", "--port", "9000", "--log-level", "debug", "--no-watch"]
    )
    assert args.config == "x.yml"
    assert args.port == 9000
    assert args.log_level == "debug"
    assert args.no_watch is True
    assert args.host == "0.0.0.0"


def test_main_invalid_config_exits_1(write_config, monkeypatch, capsys):
    """
    Brief: An invalid config file stops startup with exit code 1.

    Inputs:
      - write_config: fixture writing YAML files
      - monkeypatch: pytest fixture
      - capsys: pytest output capture

    Outputs:
      - None
    """
    monkeypatch.setattr(main_mod, "init_logging", lambda cfg: None)
    path = write_config("ports:\n  http: not-a-port\n")
    assert main_mod.main(["--config", path]) == 1
    assert "ports" in capsys.readouterr().err


class _StoppedHandle:
    """
    Brief: Webserver handle that reports the server as already stopped.

    Outputs:
      - stopped: True once stop() was called
    """

    def __init__(self):
        self.stopped = False

    def is_running(self):
        return False

    def stop(self):
        self.stopped = True


def test_main_runs_until_webserver_stops(write_config, monkeypatch):
    """
    Brief: main() starts the server, applies CLI logging overrides, and exits 1
    when the server thread dies.

    Inputs:
      - write_config: fixture writing YAML files
      - monkeypatch: pytest fixture

    Outputs:
      - None
    """
    seen = {}
    handle = _StoppedHandle()

    def _fake_start(context, host, port):
        seen["host"] = host
        seen["port"] = port
        seen["domain"] = context.store.settings.domain
        return handle

    monkeypatch.setattr(main_mod, "init_logging", lambda cfg: seen.setdefault("log_cfg", cfg))
    monkeypatch.setattr(main_mod, "start_webserver", _fake_start)
    monkeypatch.setattr(main_mod.signal, "signal", lambda signum, handler: None)

    path = write_config(FULL_CONFIG + "logging:\n  level: warn\n  stderr: false\n")
    code = main_mod.main(["--config", path, "--no-watch", "--port", "9000", "--log-level", "debug"])

    assert code == 1
    assert handle.stopped is True
    assert seen["port"] == 9000
    assert seen["domain"] == "foo.bar"
    assert seen["log_cfg"] == {"level": "debug", "stderr": False}
