"""
LLM Visibility Analytics
========================

Tracks whether AI assistants cite your domain or mention your brand when
answering the questions attached to your keyword concepts:
- ChatGPT
- Claude
- Gemini
- Perplexity

Turns raw per-provider check results into account-level visibility metrics,
answer consistency and trend direction, and drives/observes batch check runs.

Configuration is managed via environment variables or .env file.
"""

__version__ = "1.0.0"
