"""Entry point for ``python -m RustDist.CommitDB``."""

from RustDist.CommitDB.cli import app

if __name__ == "__main__":
    app()
