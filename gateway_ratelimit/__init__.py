"""
gateway-ratelimit: resolution of inherited rate limit policies attached to
Gateways and Routes.
"""

__version__ = "0.1.0"
