"""
YouTube Regrets Reporter core.

Rebuilds navigation sessions from raw instrumentation events, summarizes
them into regret-report data and usage statistics, and shares the results
only with the user's consent.
"""

__version__ = "0.1.0"
