import sys

from strategy_flow.cli import run as run_cli


if __name__ == "__main__":
    sys.exit(run_cli())
