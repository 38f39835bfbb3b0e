"""Run the worker with ``python -m fnworker``."""

from fnworker.cli import main

if __name__ == "__main__":
    main()
