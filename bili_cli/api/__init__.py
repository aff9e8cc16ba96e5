"""
API Layer.

This package handles all communication with the bilibili web and login APIs.
"""

from .auth import QRAuthenticator
from .client import BiliAPIClient
from .rate_limiter import AdaptiveRateLimiter
from .risk_control import RetryPolicy, RiskControlGuard
from .signer import WbiKeyCache

__all__ = [
    "AdaptiveRateLimiter",
    "BiliAPIClient",
    "QRAuthenticator",
    "RetryPolicy",
    "RiskControlGuard",
    "WbiKeyCache",
]
