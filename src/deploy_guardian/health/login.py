"""Login smoke test: authenticate with a cookie jar, then open the dashboard."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

from ..config import EnvironmentConfig, LoginTestConfig
from ..errors import ConfigurationError, GuardianError, classify_failure

logger = logging.getLogger(__name__)


class LoginFailedError(GuardianError):
    """The login endpoint rejected the credentials or could not be reached."""


@dataclass
class LoginResult:
    environment: str
    login_url: str
    dashboard_status: int

    @property
    def dashboard(self) -> str:
        return "accessible" if self.dashboard_status == 200 else "redirect"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "login": "success",
            "login_url": self.login_url,
            "dashboard": self.dashboard,
            "dashboard_status": self.dashboard_status,
        }


class LoginCheck:
    """Runs the login flow over HTTP against one environment.

    A fresh ``requests.Session`` per run keeps the auth cookie between the
    login POST and the dashboard request without leaking it across runs.
    """

    def __init__(
        self,
        config: LoginTestConfig,
        *,
        session_factory: Callable[[], requests.Session] = requests.Session,
        timeout: float = 10.0,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.timeout = timeout

    def base_url(self, env: EnvironmentConfig) -> str:
        if self.config.base_url:
            return self.config.base_url.rstrip("/")
        return f"http://{env.host}:{env.port}"

    def run(self, env: EnvironmentConfig) -> LoginResult:
        if not self.config.enabled:
            raise ConfigurationError(
                "Login test credentials are not configured "
                "(set login_test.email/password or DEPLOY_GUARDIAN_LOGIN_EMAIL/PASSWORD)"
            )
        base = self.base_url(env)
        login_url = f"{base}{self.config.login_route}"
        session = self.session_factory()
        try:
            logger.info("[%s] Logging in at %s", env.name, login_url)
            response = session.post(
                login_url,
                json={"email": self.config.email, "password": self.config.password},
                timeout=self.timeout,
            )
            self._check_login(response)
            dashboard = session.get(
                f"{base}{self.config.dashboard_route}",
                timeout=self.timeout,
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            raise LoginFailedError(
                f"Login test against {base} failed: {exc}", kind=classify_failure(str(exc))
            ) from exc
        finally:
            session.close()

        result = LoginResult(env.name, login_url, dashboard.status_code)
        logger.info("[%s] Login test completed, dashboard %s", env.name, result.dashboard)
        return result

    def _check_login(self, response: requests.Response) -> None:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        field = self.config.success_field
        if response.status_code >= 400 or (field and not data.get(field)):
            reason = data.get("error") or data.get("message") or f"HTTP {response.status_code}"
            raise LoginFailedError(f"Login failed: {reason}")
