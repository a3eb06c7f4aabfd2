"""Tests for the device-control tool."""

from unittest.mock import MagicMock, call, patch

import pytest
import serial
from click.testing import CliRunner

from mpyworkbench.boardtool import (
    list_script,
    main,
    mkdir_script,
    read_script,
    rm_script,
    write_file,
)
from mpyworkbench.exceptions import RawReplError

DEVICE = ["--port", "/dev/ttyUSB0"]


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def repl():
    """Patch RawRepl so that the session yields a mock."""
    with patch("mpyworkbench.boardtool.RawRepl") as mock_cls:
        instance = MagicMock()
        instance.__enter__.return_value = instance
        instance.exec.return_value = b""
        mock_cls.return_value = instance
        instance.cls = mock_cls
        yield instance


class TestScripts:
    """Tests for the board-side scripts."""

    def test_list_script(self):
        """Test the listing call carries its arguments."""
        script = list_script("/lib", True, False)
        assert "_walk('/lib', True, False, _out)" in script
        assert "print(json.dumps(_out))" in script
        compile(script, "<board>", "exec")

    def test_read_script(self):
        script = read_script("/main.py")
        assert "open('/main.py', 'rb')" in script
        compile(script, "<board>", "exec")

    def test_mkdir_tolerates_existing(self):
        """Test EEXIST is swallowed on the board."""
        script = mkdir_script("/lib")
        assert "os.mkdir('/lib')" in script
        assert "!= 17" in script
        compile(script, "<board>", "exec")

    def test_rm_script(self):
        script = rm_script("/lib")
        assert "os.rmdir('/lib')" in script
        assert "os.remove('/lib')" in script
        compile(script, "<board>", "exec")

    def test_paths_are_quoted(self):
        """Test quotes in names cannot break out of the string literal."""
        script = mkdir_script("/it's")
        assert '"/it\'s"' in script
        compile(script, "<board>", "exec")


class TestWriteFile:
    """Tests for write_file."""

    def test_streams_chunks_and_closes(self):
        """Test data is written in chunks and the file is always closed."""
        repl = MagicMock()
        write_file(repl, "/main.py", b"a" * 300)

        codes = [c.args[0] for c in repl.exec.call_args_list]
        assert codes[0].startswith("f = open('/main.py', 'wb')")
        assert codes[1] == f"w({b'a' * 256!r})\n"
        assert codes[2] == f"w({b'a' * 44!r})\n"
        assert codes[-1] == "f.close()\n"

    def test_closes_on_error(self):
        """Test the file is closed when a chunk fails."""
        repl = MagicMock()
        repl.exec.side_effect = [b"", RawReplError("OSError: 28"), b""]
        with pytest.raises(RawReplError):
            write_file(repl, "/main.py", b"data")
        assert repl.exec.call_args_list[-1] == call("f.close()\n")


class TestCommands:
    """Tests for the tool's subcommands."""

    def test_ls_prints_listing(self, runner, repl):
        """Test the listing JSON is echoed."""
        repl.exec.return_value = b'[{"path": "/main.py"}]\r\n'

        result = runner.invoke(main, ["ls", *DEVICE, "--recursive", "--hash"])

        assert result.exit_code == 0
        assert result.output.strip() == '[{"path": "/main.py"}]'
        script = repl.exec.call_args[0][0]
        assert "_walk('/', True, True, _out)" in script
        repl.cls.assert_called_once_with(
            "/dev/ttyUSB0", baudrate=115200, timeout=10.0
        )

    def test_read_prints_hex(self, runner, repl):
        """Test chunked hex lines are joined."""
        repl.exec.return_value = b"6869\r\n6a\r\n"
        result = runner.invoke(main, ["read", *DEVICE, "--path", "/main.py"])
        assert result.exit_code == 0
        assert result.output.strip() == "68696a"

    def test_write_sends_source(self, runner, repl, tmp_path):
        """Test the source file content reaches the board."""
        source = tmp_path / "main.py"
        source.write_bytes(b"print(1)")

        result = runner.invoke(
            main, ["write", *DEVICE, "--path", "/main.py", "--source", str(source)]
        )

        assert result.exit_code == 0
        assert call(f"w({b'print(1)'!r})\n") in repl.exec.call_args_list

    def test_board_error_exits_1(self, runner, repl):
        """Test a board exception is printed and exits with status 1."""
        repl.exec.side_effect = RawReplError("OSError: [Errno 2] ENOENT")
        result = runner.invoke(main, ["rm", *DEVICE, "--path", "/missing.py"])
        assert result.exit_code == 1
        assert "ENOENT" in result.output

    def test_port_error_exits_1(self, runner, repl):
        """Test an unopenable port exits with status 1."""
        repl.cls.side_effect = serial.SerialException("No such file")
        result = runner.invoke(main, ["mkdir", *DEVICE, "--path", "/lib"])
        assert result.exit_code == 1
        assert "Could not open /dev/ttyUSB0" in result.output

    def test_port_required(self, runner):
        result = runner.invoke(main, ["ls"])
        assert result.exit_code == 2

    def test_interrupt(self, runner, repl):
        """Test interrupt sends one Ctrl-C without entering raw mode."""
        result = runner.invoke(main, ["interrupt", *DEVICE])
        assert result.exit_code == 0
        repl.write.assert_called_once_with(b"\x03")
        repl.enter_raw_repl.assert_not_called()
        repl.close.assert_called_once()

    def test_soft_reset(self, runner, repl):
        result = runner.invoke(main, ["soft-reset", *DEVICE])
        assert result.exit_code == 0
        repl.soft_reset.assert_called_once()

    def test_stop(self, runner, repl):
        result = runner.invoke(main, ["stop", *DEVICE])
        assert result.exit_code == 0
        repl.interrupt.assert_called_once()
        repl.exit_raw_repl.assert_called_once()
