"""
Core modules for the Regrets Reporter.

This package contains the navigation batching pipeline, report
summarization and usage statistics.
"""
