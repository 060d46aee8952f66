"""Endpoint health validation and the login smoke test."""

from .login import LoginCheck, LoginFailedError, LoginResult
from .models import EndpointResult, ValidationResult
from .probes import HttpProbe, RemoteCurlProbe
from .validator import HealthValidator

__all__ = [
    "EndpointResult",
    "ValidationResult",
    "HttpProbe",
    "RemoteCurlProbe",
    "HealthValidator",
    "LoginCheck",
    "LoginFailedError",
    "LoginResult",
]
