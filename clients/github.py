"""
Runner Pool - GitHub Runner Registration Client

Organization-scoped client for self-hosted runner registration, authenticated
as a GitHub App installation.

Authentication:
  1. Sign a short-lived app JWT (RS256, iss = app client id) with PyJWT
  2. Exchange it for an installation access token
  3. Cache the installation token until shortly before it expires

Calls:
  issue(name, labels, group_id)  POST   /orgs/{org}/actions/runners/generate-jitconfig
  list_by_name(name)             GET    /orgs/{org}/actions/runners?name=...
  delete(runner_id)              DELETE /orgs/{org}/actions/runners/{runner_id}

A 409 on issuance means a runner with that name already exists and is raised
as RegistrationConflict so the registration protocol can recover from it.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable

import httpx
import jwt

from core.errors import RegistrationConflict, RegistrationError

logger = logging.getLogger("runner_pool.github")

API_VERSION = "2022-11-28"

# Installation tokens are refreshed this many seconds before GitHub expires them.
TOKEN_REFRESH_MARGIN = 60.0


class GitHubAppAuth:
    """Mints app JWTs and caches installation access tokens."""

    def __init__(
        self,
        client_id: str,
        installation_id: int,
        private_key: str,
        http: httpx.Client,
        clock: Callable[[], float] = time.time,
    ):
        self.client_id = client_id
        self.installation_id = installation_id
        self._private_key = private_key
        self._http = http
        self._clock = clock
        self._token = ""
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def app_jwt(self) -> str:
        """App JWT: backdated 60s for clock drift, 10 minute lifetime in total."""
        now = int(self._clock())
        payload = {"iat": now - 60, "exp": now + 540, "iss": self.client_id}
        return jwt.encode(payload, self._private_key, algorithm="RS256")

    def installation_token(self) -> str:
        with self._lock:
            if self._token and self._clock() < self._expires_at - TOKEN_REFRESH_MARGIN:
                return self._token

            try:
                response = self._http.post(
                    f"/app/installations/{self.installation_id}/access_tokens",
                    headers={"Authorization": f"Bearer {self.app_jwt()}"},
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise RegistrationError(
                    "create installation token", e.response.text[:200],
                    status_code=e.response.status_code,
                ) from e
            except httpx.HTTPError as e:
                raise RegistrationError("create installation token", str(e)) from e

            body = _json_body("create installation token", response)
            token = body.get("token")
            if not isinstance(token, str) or not token:
                raise RegistrationError("create installation token", "malformed response")
            self._token = token
            self._expires_at = _parse_timestamp(body.get("expires_at"), self._clock() + 3600)
            logger.debug("Installation token refreshed (installation=%s)", self.installation_id)
            return self._token


def _json_body(operation: str, response: httpx.Response) -> dict[str, Any]:
    """Decoded JSON object of a 2xx answer. Raises RegistrationError otherwise."""
    try:
        body = response.json()
    except ValueError as e:
        raise RegistrationError(operation, "malformed response") from e
    if not isinstance(body, dict):
        raise RegistrationError(operation, "malformed response")
    return body


def _parse_timestamp(value: str | None, default: float) -> float:
    if not value:
        return default
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return default


class GitHubClient:
    """Self-hosted runner registration for one GitHub organization."""

    def __init__(
        self,
        organization: str,
        client_id: str,
        installation_id: int,
        private_key: str,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.organization = organization
        self._http = httpx.Client(
            base_url=api_url.rstrip("/"),
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": API_VERSION,
            },
            timeout=timeout,
            transport=transport,
        )
        self.auth = GitHubAppAuth(client_id, installation_id, private_key, self._http, clock)

    def close(self):
        self._http.close()

    def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.auth.installation_token()}"}
        try:
            response = self._http.request(method, path, headers=headers, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            error_cls = RegistrationConflict if (
                status == 409 and operation == "generate jitconfig"
            ) else RegistrationError
            raise error_cls(operation, e.response.text[:200], status_code=status) from e
        except httpx.HTTPError as e:
            raise RegistrationError(operation, str(e)) from e
        return response

    def issue(self, name: str, labels: list[str], group_id: int) -> str:
        """Generate a just-in-time runner config. Returns the encoded JIT config."""
        response = self._request(
            "generate jitconfig", "POST",
            f"/orgs/{self.organization}/actions/runners/generate-jitconfig",
            json={
                "name": name,
                "runner_group_id": group_id,
                "labels": labels,
                "work_folder": "_work",
            },
        )
        credential = _json_body("generate jitconfig", response).get("encoded_jit_config")
        if not isinstance(credential, str) or not credential:
            raise RegistrationError("generate jitconfig", "malformed response")
        return credential

    def list_by_name(self, name: str) -> list[dict[str, Any]]:
        response = self._request(
            "list runners", "GET",
            f"/orgs/{self.organization}/actions/runners",
            params={"name": name, "per_page": 100},
        )
        runners = _json_body("list runners", response).get("runners") or []
        if not isinstance(runners, list) or not all(isinstance(r, dict) for r in runners):
            raise RegistrationError("list runners", "malformed response")
        return runners

    def delete(self, runner_id: int) -> None:
        self._request(
            "delete runner", "DELETE",
            f"/orgs/{self.organization}/actions/runners/{runner_id}",
        )
