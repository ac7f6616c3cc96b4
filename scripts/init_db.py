"""Create the cataloging and outbox tables."""

from __future__ import annotations

import sys

from src.booksphere.config import load_config


def main() -> int:
    config = load_config()
    print(f"Database initialized: {config.engine.url.render_as_string(hide_password=True)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
