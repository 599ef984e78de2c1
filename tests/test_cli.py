"""Unit tests for the wchtools CLI commands."""

import json
from unittest.mock import AsyncMock, Mock, patch

import pytest
from click.testing import CliRunner

from pywchtools.cli import main
from pywchtools.exceptions import WchRemoteError
from pywchtools.models import ItemFailure, SyncResult


@pytest.fixture
def runner():
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def mock_config():
    """Keep the CLI from logging in with configured credentials."""
    with patch("pywchtools.cli.config") as mock:
        mock.username = None
        yield mock


def write_type(base, name, item):
    folder = base / "types"
    folder.mkdir(parents=True, exist_ok=True)
    (folder / name).write_text(json.dumps(item))


class TestMainGroup:
    """Tests for the main CLI group."""

    def test_main_help(self, runner):
        """Test main help shows all commands."""
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("push", "pull", "list", "delete", "compare"):
            assert command in result.output

    def test_unknown_type_rejected(self, runner):
        """Test that type names are validated."""
        result = runner.invoke(main, ["push", "-t", "widgets"])
        assert result.exit_code == 2


class TestListCommand:
    """Tests for the list command."""

    def test_list_local(self, runner, tmp_path):
        """Test listing local items of one type."""
        write_type(tmp_path, "t1.json", {"id": "t1", "name": "Art"})

        result = runner.invoke(main, ["list", "-t", "types", "-d", str(tmp_path)])

        assert result.exit_code == 0
        assert "t1" in result.output
        assert "Art" in result.output


class TestPushCommand:
    """Tests for the push command."""

    @patch("pywchtools.cli.get_helper")
    def test_push_passes_options(self, mock_get_helper, runner, tmp_path):
        """Test that CLI flags become call options."""
        helper = Mock()
        helper.push_all_items = AsyncMock(return_value=SyncResult(succeeded=[{"id": "a"}]))
        mock_get_helper.return_value = helper

        result = runner.invoke(
            main,
            ["push", "-t", "types", "-d", str(tmp_path), "-c", "2", "--tag", "batch"],
        )

        assert result.exit_code == 0
        opts = helper.push_all_items.call_args.args[1]
        assert opts == {"concurrent_limit": 2, "set_tag": "batch"}
        mock_get_helper.assert_called_once_with("types")

    @patch("pywchtools.cli.get_helper")
    def test_push_modified(self, mock_get_helper, runner, tmp_path):
        """Test that --modified pushes only modified items."""
        helper = Mock()
        helper.push_modified_items = AsyncMock(return_value=SyncResult())
        mock_get_helper.return_value = helper

        result = runner.invoke(main, ["push", "-t", "types", "-m", "-d", str(tmp_path)])

        assert result.exit_code == 0
        helper.push_modified_items.assert_awaited_once()
        helper.push_all_items.assert_not_called()

    @patch("pywchtools.cli.get_helper")
    def test_push_all_failed(self, mock_get_helper, runner, tmp_path):
        """Test a non-zero exit when every item failed."""
        helper = Mock()
        helper.push_all_items = AsyncMock(
            return_value=SyncResult(failed=[ItemFailure("t1.json", ValueError("boom"))])
        )
        mock_get_helper.return_value = helper

        result = runner.invoke(main, ["push", "-t", "types", "-d", str(tmp_path)])

        assert result.exit_code == 1
        assert "t1.json" in result.output

    @patch("pywchtools.cli.get_helper")
    def test_push_error(self, mock_get_helper, runner, tmp_path):
        """Test that a sync error is reported and exits with 1."""
        helper = Mock()
        helper.push_all_items = AsyncMock(side_effect=WchRemoteError("denied", status_code=403))
        mock_get_helper.return_value = helper

        result = runner.invoke(main, ["push", "-t", "types", "-d", str(tmp_path)])

        assert result.exit_code == 1
        assert "denied" in result.output


class TestPullCommand:
    """Tests for the pull command."""

    @patch("pywchtools.cli.get_helper")
    def test_pull_with_deletions(self, mock_get_helper, runner, tmp_path):
        """Test that --deletions is passed to the helper."""
        helper = Mock()
        helper.pull_all_items = AsyncMock(return_value=SyncResult())
        mock_get_helper.return_value = helper

        result = runner.invoke(
            main, ["pull", "-t", "types", "--deletions", "--ready", "-d", str(tmp_path)]
        )

        assert result.exit_code == 0
        opts = helper.pull_all_items.call_args.args[1]
        assert opts == {"deletions": True, "filter_ready": True}


class TestDeleteCommand:
    """Tests for the delete command."""

    def test_delete_requires_items(self, runner):
        """Test that delete needs an id or a local path."""
        result = runner.invoke(main, ["delete", "-t", "types"])
        assert result.exit_code == 2

    def test_delete_local(self, runner, tmp_path):
        """Test deleting a local item file."""
        write_type(tmp_path, "t1.json", {"id": "t1"})

        result = runner.invoke(
            main, ["delete", "-t", "types", "--local", "t1.json", "-d", str(tmp_path)]
        )

        assert result.exit_code == 0
        assert not (tmp_path / "types" / "t1.json").exists()


class TestCompareCommand:
    """Tests for the compare command."""

    def test_compare_equal_folders(self, runner, tmp_path):
        """Test that equal folders exit with 0."""
        write_type(tmp_path / "a", "t1.json", {"id": "t1", "rev": "1"})
        write_type(tmp_path / "b", "t1.json", {"id": "t1", "rev": "2"})

        result = runner.invoke(
            main,
            ["compare", "-s", str(tmp_path / "a"), "-T", str(tmp_path / "b"), "-t", "types"],
        )

        assert result.exit_code == 0

    def test_compare_different_folders(self, runner, tmp_path):
        """Test that differences exit with 1."""
        write_type(tmp_path / "a", "t1.json", {"id": "t1", "name": "x"})
        write_type(tmp_path / "b", "t2.json", {"id": "t2"})

        result = runner.invoke(
            main,
            ["compare", "-s", str(tmp_path / "a"), "-T", str(tmp_path / "b"), "-t", "types"],
        )

        assert result.exit_code == 1
