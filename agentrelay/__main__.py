"""
Entry point for running agentrelay as a module: python -m agentrelay
"""

from agentrelay.cli.commands import app

if __name__ == "__main__":
    app()
