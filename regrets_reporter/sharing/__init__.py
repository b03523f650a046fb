"""
Consent-gated sharing and on-device export of data points.
"""
