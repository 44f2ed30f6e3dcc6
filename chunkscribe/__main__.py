"""Package entry point for ``python -m chunkscribe``.

Delegates to the CLI's main(); ``python -m chunkscribe serve`` starts the
HTTP API.
"""

from chunkscribe.cli import main

if __name__ == "__main__":
    main()
