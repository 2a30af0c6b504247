"""Entry point for the queue diagnostics CLI."""

from audiojobs_modules.diagnostics import main

if __name__ == "__main__":
    raise SystemExit(main())
