"""Allow ``python -m shipyard``."""

from .cli import main

main()
