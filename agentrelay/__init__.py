"""
agentrelay - remote command relay for local agent sessions.
"""

__version__ = "0.1.0"
__logo__ = "📡"
