import socket
import sys

import pytest

import mk
from mk_store import Container, new_root_container


def test_client_commands():
    assert mk.client_commands("web", ["ls", "-l"]) == [
        "in web",
        "start ls\x00-l",
        "wait",
        "die",
    ]


def test_client_commands_without_args():
    assert mk.client_commands("web", []) == ["in web", "start ", "wait", "die"]


def test_first_error_unwraps_groups():
    inner = KeyError("x")
    group = BaseExceptionGroup("outer", [BaseExceptionGroup("inner", [inner])])
    assert mk.first_error(group) is inner
    assert mk.first_error(inner) is inner


# ============================================================================
# Internal engine mode
# ============================================================================

def test_engine_exec_records_and_runs(root, monkeypatch):
    monkeypatch.chdir(root)
    mk.run_engine_op("exec", [sys.executable, "-c", "open('made', 'w').close()"])

    assert (root / "made").exists()
    record = Container(root.name, root).get_command("0")
    assert record.argv == [sys.executable, "-c", "open('made', 'w').close()"]


def test_engine_exec_failure(root, monkeypatch, capsys):
    monkeypatch.chdir(root)
    with pytest.raises(SystemExit) as exc:
        mk.run_engine_op("exec", [sys.executable, "-c", "raise SystemExit(4)"])
    assert exc.value.code == 1
    assert "exit status 4" in capsys.readouterr().err


def test_engine_unknown_op(root, monkeypatch, capsys):
    monkeypatch.chdir(root)
    with pytest.raises(SystemExit):
        mk.run_engine_op("pull", ["ubuntu"])
    assert "No such command: pull" in capsys.readouterr().err


def test_engine_op_needs_a_command(root, monkeypatch, capsys):
    monkeypatch.chdir(root)
    with pytest.raises(SystemExit):
        mk.run_engine_op("exec", [])
    assert "exec: missing command" in capsys.readouterr().err


# ============================================================================
# Client mode, end to end
# ============================================================================

def run_main(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["mk", *argv])
    with pytest.raises(SystemExit) as exc:
        mk.main()
    return exc.value.code


def test_main_reports_missing_container(root, monkeypatch, capsys):
    code = run_main(monkeypatch, "--root", str(root), "foo", "a", "b")
    assert code == 1
    assert "Engine error: foo: no such container" in capsys.readouterr().err
    assert (root / ".docker/bin/docker").exists()
    assert not (root / ".docker/engine/ctl").exists()
    assert not (root / ".docker/engine/containers").exists()


def test_main_reaches_start(root, monkeypatch, capsys):
    c0 = new_root_container(root, mk.SELF_ARGV)
    (c0.path(".docker/engine/containers/0")).mkdir(parents=True)

    code = run_main(monkeypatch, "--root", str(root), "0", "true")
    assert code == 1
    assert "Engine error: start: not implemented" in capsys.readouterr().err


def test_main_leaves_a_live_engine_alone(root, monkeypatch, capsys):
    new_root_container(root, mk.SELF_ARGV)
    ctl = root / ".docker/engine/ctl"
    ctl.parent.mkdir(parents=True, exist_ok=True)
    live = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        live.bind(str(ctl))
        live.listen()

        code = run_main(monkeypatch, "--root", str(root), "foo")
        assert code == 1
        assert "address already in use" in capsys.readouterr().err
        assert ctl.exists()
    finally:
        live.close()
