"""Entry point for ``python -m release_updater``."""

from release_updater.cli import run

if __name__ == "__main__":
    run()
