"""Allow ``python -m agentpipe``."""

from agentpipe.cli import main

if __name__ == "__main__":
    main()
