"""CLI module for agentrelay."""
