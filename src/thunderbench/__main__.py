from __future__ import annotations

from .cli import app


def main() -> None:
    """
    Console entrypoint for `python -m thunderbench`.

    All CLI definitions live in `thunderbench.cli`.
    """
    app(prog_name="thunderbench")


if __name__ == "__main__":
    main()
