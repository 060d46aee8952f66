"""Health validation results."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class EndpointResult:
    name: str
    url: str
    expected: Optional[str]
    status: Optional[int] = None
    healthy: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "url": self.url,
            "expected": self.expected,
            "status": self.status if self.status is not None else "ERROR",
            "healthy": self.healthy,
            "error": self.error,
        }


@dataclass
class ValidationResult:
    environment: str
    threshold: float
    endpoints: List[EndpointResult] = field(default_factory=list)

    @property
    def healthy_count(self) -> int:
        return sum(1 for endpoint in self.endpoints if endpoint.healthy)

    @property
    def total_count(self) -> int:
        return len(self.endpoints)

    @property
    def ratio(self) -> float:
        if not self.endpoints:
            return 0.0
        return self.healthy_count / self.total_count

    @property
    def healthy(self) -> bool:
        return bool(self.endpoints) and self.ratio >= self.threshold

    def to_dict(self) -> dict:
        return {
            "environment": self.environment,
            "healthy": self.healthy,
            "healthy_count": self.healthy_count,
            "total_count": self.total_count,
            "threshold": self.threshold,
            "endpoints": [endpoint.to_dict() for endpoint in self.endpoints],
        }
