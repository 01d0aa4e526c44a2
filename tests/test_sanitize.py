"""Tests for root filesystem sanitizing, hostname change and zero fill."""

from unittest.mock import patch

import pytest

from rpi_image_shrinker.storage import sanitize


class TestSanitizeRoot:
    """Tests for sanitize_root()."""

    def test_removes_history_and_temp_files(self, root_tree):
        (root_tree / "root").mkdir()
        (root_tree / "root" / ".bash_history").write_text("sudo reboot\n")
        (root_tree / "home" / "pi").mkdir(parents=True)
        (root_tree / "home" / "pi" / ".bash_history").write_text("ls\n")
        (root_tree / "tmp" / "scratch").mkdir(parents=True)
        (root_tree / "tmp" / "scratch" / "file").write_text("x")

        removed = sanitize.sanitize_root(
            root_tree, ["root/.bash_history", "home/*/.bash_history", "tmp/*"]
        )

        assert removed == 3
        assert not (root_tree / "root" / ".bash_history").exists()
        assert not (root_tree / "home" / "pi" / ".bash_history").exists()
        assert (root_tree / "tmp").is_dir()
        assert list((root_tree / "tmp").iterdir()) == []

    def test_recursive_pattern_keeps_directories(self, root_tree):
        apt_logs = root_tree / "var" / "log" / "apt"
        apt_logs.mkdir(parents=True)
        (apt_logs / "history.log").write_text("install\n")
        (root_tree / "var" / "log" / "syslog").write_text("boot\n")

        removed = sanitize.sanitize_root(root_tree, ["var/log/**/*"])

        assert removed == 2
        assert apt_logs.is_dir()
        assert not (root_tree / "var" / "log" / "syslog").exists()

    def test_symlinks_are_not_followed(self, root_tree, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "keep.txt").write_text("keep")
        (root_tree / "tmp").mkdir()
        (root_tree / "tmp" / "link").symlink_to(outside)

        sanitize.sanitize_root(root_tree, ["tmp/*"])

        assert (outside / "keep.txt").exists()
        assert not (root_tree / "tmp" / "link").exists()

    def test_leading_slash_stays_inside_root(self, root_tree):
        (root_tree / "tmp").mkdir()
        (root_tree / "tmp" / "junk").write_text("x")

        assert sanitize.sanitize_root(root_tree, ["/tmp/*"]) == 1

    def test_no_matches(self, root_tree):
        assert sanitize.sanitize_root(root_tree, ["var/tmp/*"]) == 0


class TestSetHostname:
    """Tests for set_hostname()."""

    def test_rewrites_hostname_and_hosts(self, root_tree):
        sanitize.set_hostname(root_tree, "kiosk-01")

        assert (root_tree / "etc" / "hostname").read_text() == "kiosk-01\n"
        hosts = (root_tree / "etc" / "hosts").read_text().splitlines()
        assert "127.0.1.1\tkiosk-01" in hosts
        assert "127.0.0.1\tlocalhost" in hosts
        assert not any("raspberrypi" in line for line in hosts)

    def test_appends_missing_hosts_entry(self, root_tree):
        (root_tree / "etc" / "hosts").write_text("127.0.0.1\tlocalhost\n")

        sanitize.set_hostname(root_tree, "kiosk")

        assert (root_tree / "etc" / "hosts").read_text() == (
            "127.0.0.1\tlocalhost\n127.0.1.1\tkiosk\n"
        )

    def test_blank_lines_in_hosts_survive(self, root_tree):
        (root_tree / "etc" / "hosts").write_text("127.0.0.1\tlocalhost\n\n127.0.1.1\told\n")

        sanitize.set_hostname(root_tree, "new")

        assert (root_tree / "etc" / "hosts").read_text() == (
            "127.0.0.1\tlocalhost\n\n127.0.1.1\tnew\n"
        )

    @pytest.mark.parametrize("hostname", ["", "-pi", "pi-", "pi_zero", "a" * 64, "pi.local"])
    def test_invalid_hostname(self, root_tree, hostname):
        with pytest.raises(ValueError):
            sanitize.set_hostname(root_tree, hostname)

        assert (root_tree / "etc" / "hostname").read_text() == "raspberrypi\n"


class TestZeroFreeSpace:
    @patch("rpi_image_shrinker.storage.sanitize.run_command")
    @patch("rpi_image_shrinker.storage.sanitize.shutil.which", return_value="/usr/sbin/zerofree")
    def test_runs_zerofree(self, _which, mock_run, completed):
        mock_run.return_value = completed()

        assert sanitize.zero_free_space("/dev/sda2") is True
        mock_run.assert_called_once_with(["zerofree", "/dev/sda2"])

    @patch("rpi_image_shrinker.storage.sanitize.run_command")
    @patch("rpi_image_shrinker.storage.sanitize.shutil.which", return_value=None)
    def test_missing_zerofree_is_skipped(self, _which, mock_run):
        assert sanitize.zero_free_space("/dev/sda2") is False
        mock_run.assert_not_called()

    @patch("rpi_image_shrinker.storage.sanitize.run_command")
    @patch("rpi_image_shrinker.storage.sanitize.shutil.which", return_value="/usr/sbin/zerofree")
    def test_zerofree_failure_is_a_warning(self, _which, mock_run, completed):
        mock_run.return_value = completed(returncode=1, stderr="filesystem is mounted")

        assert sanitize.zero_free_space("/dev/sda2") is False
