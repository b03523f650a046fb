"""
Lifecycle orchestration and UI message channels.
"""
