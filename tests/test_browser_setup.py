"""Tests for the Playwright browser install helper."""

import subprocess
import sys
from unittest.mock import MagicMock, patch

from catalog_crawler.browser_setup import install_browser


class TestInstallBrowser:
    """Test cases for install_browser."""

    def test_success(self, capsys):
        with patch("catalog_crawler.browser_setup.subprocess.run",
                   return_value=MagicMock(stdout="done")) as run:
            assert install_browser() == 0

        run.assert_called_once()
        assert run.call_args.args[0] == [sys.executable, "-m", "playwright", "install", "chromium"]
        assert "chromium installed" in capsys.readouterr().out

    def test_failure_prints_manual_command(self, capsys):
        error = subprocess.CalledProcessError(1, "playwright", stderr="network down")
        with patch("catalog_crawler.browser_setup.subprocess.run", side_effect=error):
            assert install_browser("firefox") == 1

        err = capsys.readouterr().err
        assert "network down" in err
        assert "playwright install firefox" in err

    def test_missing_executable(self):
        with patch("catalog_crawler.browser_setup.subprocess.run", side_effect=FileNotFoundError("python")):
            assert install_browser() == 1
