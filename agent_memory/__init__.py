"""
Agent Memory - Conversational memory for a coding-agent REPL.

This package embeds past conversation and exchange summaries, stores them
in SQLite, and retrieves the most relevant ones to augment new prompts.
"""

__version__ = "1.0.0"
