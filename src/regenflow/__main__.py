from __future__ import annotations

from regenflow.cli import main


if __name__ == "__main__":
    main()
