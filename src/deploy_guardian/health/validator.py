"""Post-deployment health validation."""

from __future__ import annotations

import logging
import threading
from typing import Optional, Sequence

import requests

from ..config import EndpointConfig, EnvironmentConfig
from ..errors import CancelledError, GuardianError
from .models import EndpointResult, ValidationResult
from .probes import HttpProbe, StatusProbe

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS = (EndpointConfig(name="Root", route="/"),)


class HealthValidator:
    """Probes every endpoint and computes a threshold verdict.

    A failing probe is recorded against its endpoint and never raised, so
    one broken route cannot abort measurement of the others.
    """

    def __init__(
        self,
        *,
        http_probe: Optional[StatusProbe] = None,
        ssh_probe: Optional[StatusProbe] = None,
        pass_threshold: float = 0.75,
    ) -> None:
        self.http_probe = http_probe or HttpProbe()
        self.ssh_probe = ssh_probe
        self.pass_threshold = pass_threshold

    def validate(
        self,
        env: EnvironmentConfig,
        endpoints: Optional[Sequence[EndpointConfig]] = None,
        pass_threshold: Optional[float] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> ValidationResult:
        if endpoints is None:
            endpoints = env.endpoints or DEFAULT_ENDPOINTS
        threshold = self.pass_threshold if pass_threshold is None else pass_threshold
        probe = self._probe_for(env)

        result = ValidationResult(environment=env.name, threshold=threshold)
        for endpoint in endpoints:
            if cancel_event is not None and cancel_event.is_set():
                raise CancelledError(f"Health validation of {env.name} cancelled")
            result.endpoints.append(self._check(probe, env, endpoint, cancel_event))

        log = logger.info if result.healthy else logger.warning
        log(
            "[%s] Validation: %d/%d endpoints healthy (threshold %.0f%%)",
            env.name,
            result.healthy_count,
            result.total_count,
            threshold * 100,
        )
        return result

    def _check(
        self,
        probe: StatusProbe,
        env: EnvironmentConfig,
        endpoint: EndpointConfig,
        cancel_event: Optional[threading.Event],
    ) -> EndpointResult:
        port = endpoint.port or env.port
        item = EndpointResult(
            name=endpoint.name,
            url=probe.url(env, port, endpoint.route),
            expected=endpoint.expected_status,
        )
        try:
            item.status = probe.status(env, port, endpoint.route, cancel_event=cancel_event)
        except CancelledError:
            raise
        except (requests.RequestException, GuardianError, ValueError) as exc:
            item.error = str(exc)
            logger.warning("[%s] %s: ERROR - %s", env.name, endpoint.name, exc)
            return item

        item.healthy = endpoint.matches(item.status)
        logger.info("[%s] %s %s: %s", env.name, "OK" if item.healthy else "FAIL", endpoint.name, item.status)
        return item

    def _probe_for(self, env: EnvironmentConfig) -> StatusProbe:
        if env.probe_via == "ssh":
            if self.ssh_probe is None:
                raise GuardianError(f"Environment {env.name} probes via ssh but no ssh probe is configured")
            return self.ssh_probe
        return self.http_probe
