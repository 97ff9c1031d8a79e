"""AI-backed relevance checks and productivity insights."""
