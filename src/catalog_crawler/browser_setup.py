"""
Browser setup helper.

Downloads the Chromium build Playwright drives. Exposed as the
``catalog-crawler-install-browser`` console script; run it once after
installing the package.
"""
import subprocess
import sys


def install_browser(browser: str = "chromium") -> int:
    """
    Run ``playwright install <browser>``.

    Returns:
        0 on success, 1 when the install failed
    """
    print(f"Running 'playwright install {browser}'...")
    try:
        result = subprocess.run(
            [sys.executable, "-m", "playwright", "install", browser],
            check=True,
            capture_output=True,
            text=True
        )
        if result.stdout:
            print(result.stdout)
        print(f"{browser} installed for Playwright.")
        return 0
    except subprocess.CalledProcessError as e:
        print(f"Error installing {browser} for Playwright: {e}", file=sys.stderr)
        if e.stderr:
            print(e.stderr, file=sys.stderr)
    except FileNotFoundError as e:
        print(f"Error: Could not find Python executable: {e}", file=sys.stderr)

    print(
        "Please run the following command manually:\n"
        f"  poetry run playwright install {browser}",
        file=sys.stderr
    )
    return 1


def main():
    sys.exit(install_browser())


if __name__ == "__main__":
    main()
