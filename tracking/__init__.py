"""
Activity tracking package for TraceCLI.

Session tracking, categorization, resource sampling, browser history and
the SQLite store. No terminal or UI dependencies.
"""
