"""Where components come from.

:class:`GitHubSource` verifies repositories through the GitHub REST API
and resolves archive download URLs. The zipball endpoint answers with a
redirect to a signed codeload URL; when no redirect is offered the public
``archive/refs/heads`` URL is used instead.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol
from urllib.parse import quote

from pydantic import ValidationError

from pyplug._transport import Transport
from pyplug.config import PyplugConfig
from pyplug.exceptions import PyplugTransportError, VerificationError
from pyplug.models.repository import RepositoryInfo

_logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_BRANCH_RE = re.compile(r"^[A-Za-z0-9_./-]+$")


class SourceInspector(Protocol):
    """Looks up repository metadata and download locations."""

    async def get_repository(self, owner: str, name: str) -> RepositoryInfo:
        ...

    async def resolve_download_url(self, owner: str, name: str, branch: str) -> str:
        ...


class Detector(Protocol):
    """Decides whether a resource is an installable package.

    ``None`` means the answer is not known (yet).
    """

    def detect(self, resource: str) -> bool | None:
        ...


def validate_identifier(owner: str, name: str, branch: str | None = None) -> None:
    """Reject owner/name/branch values that cannot form a safe key or path."""
    resource = f"{owner}/{name}"
    for label, value in (("owner", owner), ("name", name)):
        if not value or not _NAME_RE.match(value) or value in {".", ".."}:
            raise VerificationError(f"invalid {label}: {value!r}", resource=resource, step="verify")
    if branch is not None and (not branch or not _BRANCH_RE.match(branch) or ".." in branch):
        raise VerificationError(f"invalid branch: {branch!r}", resource=resource, step="verify")


class GitHubSource:
    """GitHub-backed :class:`SourceInspector`."""

    def __init__(self, config: PyplugConfig, transport: Transport) -> None:
        self._config = config
        self._transport = transport

    def _repo_url(self, owner: str, name: str) -> str:
        return f"{self._config.api_base_url}/repos/{quote(owner)}/{quote(name)}"

    def archive_url(self, owner: str, name: str, branch: str) -> str:
        """Public archive URL used when the API does not redirect."""
        return f"{self._config.archive_base_url}/{quote(owner)}/{quote(name)}/archive/refs/heads/{quote(branch)}.zip"

    async def get_repository(self, owner: str, name: str) -> RepositoryInfo:
        validate_identifier(owner, name)
        resource = f"{owner}/{name}"
        try:
            payload = await self._transport.get_json(self._repo_url(owner, name))
        except PyplugTransportError as exc:
            if exc.status_code == 404:
                raise VerificationError(f"repository {resource} not found", resource=resource, step="verify") from exc
            raise VerificationError(
                f"could not verify {resource}: {exc.message}",
                resource=resource,
                step="verify",
                recoverable=True,
            ) from exc

        if not isinstance(payload, dict):
            raise VerificationError(f"unexpected repository payload for {resource}", resource=resource, step="verify")
        try:
            info = RepositoryInfo.model_validate(payload)
        except ValidationError as exc:
            raise VerificationError(f"malformed repository payload for {resource}", resource=resource, step="verify") from exc
        _logger.debug("Verified %s (default branch %s)", info.full_name, info.default_branch)
        return info

    async def resolve_download_url(self, owner: str, name: str, branch: str) -> str:
        """HTTPS URL of the branch archive.

        Raises :class:`VerificationError` when the redirect target is not
        HTTPS.
        """
        validate_identifier(owner, name, branch)
        api_url = f"{self._repo_url(owner, name)}/zipball/{quote(branch)}"
        try:
            location = await self._transport.head_location(api_url)
        except PyplugTransportError:
            _logger.debug("Zipball lookup failed for %s/%s, using archive URL", owner, name, exc_info=True)
            location = None

        if location:
            if not location.startswith("https://"):
                raise VerificationError(
                    f"refusing non-HTTPS download URL {location}",
                    resource=f"{owner}/{name}",
                    step="download",
                )
            return location
        return self.archive_url(owner, name, branch)
