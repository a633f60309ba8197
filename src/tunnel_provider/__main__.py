"""Entry point: a tunnel worker when the role marker is set, the CLI otherwise."""

import os
import sys

from .common.settings import TUNNEL_TYPE_ENV


def main() -> None:
    if os.environ.get(TUNNEL_TYPE_ENV):
        from .worker import run_worker

        sys.exit(run_worker())

    from .cli import main as cli_main

    cli_main()


if __name__ == "__main__":
    main()
