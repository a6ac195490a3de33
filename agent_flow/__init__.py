# AI Agent Flow
"""
Pull request automation trigger: acknowledges a pull request event,
prepares a checkout with pinned dependencies, and hands off to the
external AI flow script for code review and test generation.
"""

__version__ = "1.0.0"
