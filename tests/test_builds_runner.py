"""Tests for builds/runner.py module.

Command execution uses the running interpreter as a real subprocess;
venv and pip steps are tested with run_command mocked.
"""

import asyncio
import sys
from unittest.mock import AsyncMock, patch

import pytest

from spacejar.builds.runner import (
    create_virtualenv,
    has_requirements,
    install_dependencies,
    run_command,
)
from spacejar.errors import ProcessExecutionError


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


class TestRunCommand:
    """Tests for run_command."""

    def test_success(self, tmp_path):
        """Output is captured and the exit code recorded."""
        result = asyncio.run(
            run_command(_python("print('hello')"), cwd=tmp_path, timeout=30)
        )

        assert result.exit_code == 0
        assert result.stdout.strip() == "hello"
        assert result.duration >= 0

    def test_non_zero_exit(self):
        """A failing command raises with its stderr attached."""
        code = "import sys; sys.stderr.write('broken'); sys.exit(3)"

        with pytest.raises(ProcessExecutionError) as exc_info:
            asyncio.run(run_command(_python(code), timeout=30))

        error = exc_info.value
        assert error.code == "command_failed"
        assert error.returncode == 3
        assert "broken" in error.stderr

    def test_missing_executable(self, tmp_path):
        """A command that cannot start is an execution error."""
        missing = str(tmp_path / "does-not-exist")

        with pytest.raises(ProcessExecutionError) as exc_info:
            asyncio.run(run_command([missing]))
        assert exc_info.value.code == "execution_error"

    def test_timeout(self):
        """A command exceeding its timeout is killed."""
        with pytest.raises(ProcessExecutionError) as exc_info:
            asyncio.run(
                run_command(_python("import time; time.sleep(30)"), timeout=0.2)
            )

        assert exc_info.value.code == "timeout"
        assert exc_info.value.returncode == -1


class TestHasRequirements:
    """Tests for has_requirements."""

    def test_missing_file(self, tmp_path):
        assert has_requirements(tmp_path / "requirements.txt") is False

    def test_comments_only(self, tmp_path):
        """Blank lines and comments do not count."""
        path = tmp_path / "requirements.txt"
        path.write_text("# nothing yet\n\n   \n")
        assert has_requirements(path) is False

    def test_with_requirement(self, tmp_path):
        path = tmp_path / "requirements.txt"
        path.write_text("# web\nhttpx>=0.27\n")
        assert has_requirements(path) is True


class TestInstallDependencies:
    """Tests for install_dependencies."""

    def test_no_requirements_skips_pip(self, tmp_path):
        """Without requirements the target is created empty."""
        target = tmp_path / "deps"
        with patch(
            "spacejar.builds.runner.run_command", new_callable=AsyncMock
        ) as mock_run:
            asyncio.run(install_dependencies(tmp_path / "requirements.txt", target))

        mock_run.assert_not_called()
        assert target.is_dir()
        assert list(target.iterdir()) == []

    def test_pip_command(self, tmp_path):
        """pip installs into the target directory."""
        requirements = tmp_path / "requirements.txt"
        requirements.write_text("rich\n")
        target = tmp_path / "deps"

        with patch(
            "spacejar.builds.runner.run_command", new_callable=AsyncMock
        ) as mock_run:
            asyncio.run(install_dependencies(requirements, target, python="py3"))

        cmd = mock_run.call_args.args[0]
        assert cmd == [
            "py3",
            "-m",
            "pip",
            "install",
            "--target",
            str(target),
            "-r",
            str(requirements),
        ]


class TestCreateVirtualenv:
    """Tests for create_virtualenv."""

    def test_creates_and_upgrades_pip(self, tmp_path):
        """The venv is created, then pip is upgraded inside it."""
        venv = tmp_path / "venv"

        async def fake_run(cmd, cwd=None, timeout=None):
            if "venv" in cmd:
                (venv / "bin").mkdir(parents=True)
                (venv / "bin" / "activate").write_text("")

        with patch("spacejar.builds.runner.run_command", side_effect=fake_run) as mock:
            asyncio.run(create_virtualenv(venv, python="py3"))

        first, second = (c.args[0] for c in mock.call_args_list)
        assert first == ["py3", "-m", "venv", "--system-site-packages", str(venv)]
        assert second == [str(venv / "bin" / "pip"), "install", "--upgrade", "pip"]

    def test_no_pip_upgrade(self, tmp_path):
        venv = tmp_path / "venv"

        async def fake_run(cmd, cwd=None, timeout=None):
            (venv / "bin").mkdir(parents=True)
            (venv / "bin" / "activate").write_text("")

        with patch("spacejar.builds.runner.run_command", side_effect=fake_run) as mock:
            asyncio.run(create_virtualenv(venv, upgrade_pip=False))

        assert mock.call_count == 1

    def test_missing_activate(self, tmp_path):
        """A venv without bin/activate is rejected."""
        with patch("spacejar.builds.runner.run_command", new_callable=AsyncMock):
            with pytest.raises(ProcessExecutionError) as exc_info:
                asyncio.run(create_virtualenv(tmp_path / "venv"))

        assert exc_info.value.code == "venv_incomplete"
