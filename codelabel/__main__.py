"""Allow running as ``python -m codelabel``."""

from .cli import main

if __name__ == "__main__":
    main()
