"""Best-effort provisioning of a durable artifact repository per task."""

from __future__ import annotations

import logging
import re
from typing import Protocol

import httpx

from taskplane.tasks.models import TaskView

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^a-z0-9]+")
_MAX_SLUG_CHARS = 40


class ArtifactProvisioner(Protocol):
    async def ensure(self, task: TaskView) -> str | None: ...


class GitHubRepoProvisioner:
    """Create (or reuse) a private GitHub repository for a task's deliverables.

    Failures never block the task: they are logged and ``None`` is returned.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        token: str | None,
        org: str | None = None,
        api_base_url: str = "https://api.github.com",
        repo_prefix: str = "task-",
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token = token
        self.org = org
        self.api_base_url = api_base_url.rstrip("/")
        self.repo_prefix = repo_prefix
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def ensure(self, task: TaskView) -> str | None:
        if task.sandbox_artifact_ref:
            return task.sandbox_artifact_ref
        if not self.token:
            return None

        name = repo_name(task, prefix=self.repo_prefix)
        create_url = (
            f"{self.api_base_url}/orgs/{self.org}/repos"
            if self.org
            else f"{self.api_base_url}/user/repos"
        )
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        body = {
            "name": name,
            "private": True,
            "auto_init": True,
            "description": task.title[:300],
        }
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                headers=headers,
                transport=self.transport,
            ) as client:
                response = await client.post(create_url, json=body)
                if response.status_code == httpx.codes.UNPROCESSABLE_ENTITY:
                    owner = self.org or await self._authenticated_login(client)
                    response = await client.get(f"{self.api_base_url}/repos/{owner}/{name}")
                response.raise_for_status()
                url = response.json().get("html_url")
        except httpx.HTTPError as exc:
            logger.warning("Artifact repository for %s not created: %s", task.short_id, exc)
            return None
        if not url:
            logger.warning("Artifact repository response for %s had no html_url", task.short_id)
            return None
        logger.info("Artifact repository for %s: %s", task.short_id, url)
        return str(url)

    async def _authenticated_login(self, client: httpx.AsyncClient) -> str:
        response = await client.get(f"{self.api_base_url}/user")
        response.raise_for_status()
        return str(response.json()["login"])


def repo_name(task: TaskView, *, prefix: str = "task-") -> str:
    slug = _SLUG_RE.sub("-", task.title.lower()).strip("-")[:_MAX_SLUG_CHARS].strip("-")
    return f"{prefix}{task.short_id}-{slug}" if slug else f"{prefix}{task.short_id}"
