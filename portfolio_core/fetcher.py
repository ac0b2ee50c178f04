import asyncio
import base64
import logging
import re
from typing import Iterable, List, Optional

import httpx
from pydantic import ValidationError

from portfolio_core.config import Config
from portfolio_core.logger_config import redact
from portfolio_core.models import EnrichmentResult, FetchOutcome, RepositoryCandidate
from portfolio_core.summarizer import summarize_readme

logger = logging.getLogger(__name__)

_HANDLE_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,38})$")


class RepositorySourceError(Exception):
    """Listing repositories failed; the aggregation run cannot continue."""

    reason = "error"
    default_message = "Failed to fetch repositories"

    def __init__(self, detail: str, status_code: Optional[int] = None, user_message: Optional[str] = None):
        super().__init__(detail)
        self.status_code = status_code
        self.user_message = user_message or self.default_message


class UnauthorizedError(RepositorySourceError):
    reason = "unauthorized"
    default_message = (
        "GitHub rejected the configured access token. "
        "Please check that it is valid and has not expired."
    )


class RateLimitedError(RepositorySourceError):
    reason = "rate_limited"
    default_message = (
        "GitHub API rate limit exceeded. "
        "Please try again later or configure an access token."
    )


def is_valid_handle(handle: str) -> bool:
    return bool(handle) and bool(_HANDLE_PATTERN.match(handle))


def exclude_candidates(
    candidates: Iterable[RepositoryCandidate],
    handle: str,
    exclude_forks: bool = True
) -> List[RepositoryCandidate]:
    """Drop the profile repository (named after the handle) and, optionally, forks."""
    profile_name = handle.lower()
    kept = []
    for candidate in candidates:
        if candidate.name.lower() == profile_name:
            continue
        if exclude_forks and candidate.fork:
            continue
        kept.append(candidate)
    return kept


def _classify_failure(response: httpx.Response, handle: str) -> RepositorySourceError:
    status = response.status_code
    body = response.text[:500].lower()

    if status == 401 or (status == 403 and "bad credentials" in body):
        return UnauthorizedError(f"GitHub returned {status} for /users/{handle}/repos", status)
    if status == 429 or (
        status == 403
        and (response.headers.get("x-ratelimit-remaining") == "0" or "rate limit" in body)
    ):
        return RateLimitedError(f"GitHub rate limit hit ({status}) listing repositories for {handle}", status)
    if status == 404:
        return RepositorySourceError(
            f"GitHub user {handle} not found",
            status,
            user_message=f"GitHub user '{handle}' was not found",
        )
    return RepositorySourceError(f"GitHub returned {status} listing repositories for {handle}", status)


class GitHubFetcher:
    """Async GitHub REST client for a user's repositories and their readmes"""

    ACCEPT_JSON = "application/vnd.github+json"
    ACCEPT_RAW = "application/vnd.github.v3.raw"

    def __init__(self, config: Optional[Config] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or Config()
        self.github_config = self.config.github
        self.projects_config = self.config.projects
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "GitHubFetcher":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def authenticated(self) -> bool:
        return bool(self.github_config.token)

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client

        headers = {
            "Accept": self.ACCEPT_JSON,
            "User-Agent": self.github_config.user_agent,
        }
        if self.github_config.token:
            logger.debug("Using GitHub token for API authentication")
            headers["Authorization"] = f"Bearer {self.github_config.token}"
        else:
            logger.info("No GitHub token provided. Limited API access.")

        self._client = httpx.AsyncClient(
            base_url=self.github_config.base_url,
            headers=headers,
            timeout=self.github_config.timeout,
            transport=self._transport,
        )
        return self._client

    async def list_repositories(
        self,
        handle: str,
        max_candidates: Optional[int] = None,
        exclude_forks: Optional[bool] = None
    ) -> List[RepositoryCandidate]:
        """
        List a user's repositories, most recently updated first.

        Args:
            handle: GitHub username
            max_candidates: Page size requested from GitHub
            exclude_forks: Drop forked repositories (defaults to config)

        Returns:
            Candidates in the order GitHub returned them, minus the profile
            repository and excluded forks

        Raises:
            UnauthorizedError, RateLimitedError, RepositorySourceError
        """
        if not is_valid_handle(handle):
            raise ValueError(f"Invalid GitHub handle: {handle!r}")

        per_page = max_candidates or self.projects_config.fetch_count
        if exclude_forks is None:
            exclude_forks = self.projects_config.exclude_forks

        logger.info(f"Fetching repositories: handle={handle}, per_page={per_page}")

        client = self._ensure_client()
        try:
            response = await client.get(
                f"/users/{handle}/repos",
                params={
                    "sort": "updated",
                    "direction": "desc",
                    "per_page": per_page,
                    "type": "owner",
                },
            )
        except httpx.HTTPError as e:
            raise RepositorySourceError(f"Request for {handle} repositories failed: {redact(str(e))}") from e

        if response.status_code != 200:
            raise _classify_failure(response, handle)

        try:
            payload = response.json()
        except ValueError as e:
            raise RepositorySourceError(f"Invalid JSON listing repositories for {handle}") from e
        if not isinstance(payload, list):
            raise RepositorySourceError(f"Unexpected payload type {type(payload).__name__} for {handle}")

        candidates = []
        for raw in payload:
            try:
                candidates.append(RepositoryCandidate.from_api(raw))
            except (AttributeError, KeyError, TypeError, ValidationError) as e:
                logger.warning(f"Skipping malformed repository record for {handle}: {e}")

        kept = exclude_candidates(candidates, handle, exclude_forks)
        logger.info(f"Received {len(candidates)} repositories for {handle}, {len(kept)} after filtering")
        return kept

    async def fetch_readme(self, handle: str, name: str) -> Optional[str]:
        """
        Fetch the raw readme of ``handle/name``.

        Returns:
            Readme text, or None when the repository has no readme

        Raises:
            httpx.HTTPError on transport failure or unexpected status
        """
        client = self._ensure_client()
        response = await client.get(f"/repos/{handle}/{name}/readme", headers={"Accept": self.ACCEPT_RAW})

        if response.status_code == 404:
            return None
        response.raise_for_status()

        if "json" in response.headers.get("content-type", ""):
            # Server ignored the raw media type and sent the content envelope
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError("Unexpected README payload")
            content = data.get("content") or ""
            if data.get("encoding") == "base64":
                return base64.b64decode(content).decode("utf-8", errors="ignore")
            return content
        return response.text

    async def fetch_summary(self, handle: str, name: str) -> EnrichmentResult:
        """Fetch and summarize a readme; never raises."""
        max_attempts = self.projects_config.readme_max_attempts
        retry_delay = self.projects_config.readme_retry_delay

        for attempt in range(max_attempts):
            try:
                readme = await self.fetch_readme(handle, name)
            except (httpx.HTTPError, ValueError) as e:
                if attempt == max_attempts - 1:  # Last attempt
                    logger.warning(f"Failed to fetch README for {handle}/{name}: {redact(str(e))}")
                    return EnrichmentResult(name=name, outcome=FetchOutcome.ERROR)
                logger.warning(f"Attempt {attempt + 1} failed for {handle}/{name} README, retrying...")
                await asyncio.sleep(retry_delay)
                retry_delay *= 2
                continue

            if readme is None:
                logger.debug(f"No README for {handle}/{name}")
                return EnrichmentResult(name=name, outcome=FetchOutcome.NOT_FOUND)

            summary = await asyncio.to_thread(
                summarize_readme, readme, self.projects_config.summary_word_budget
            )
            return EnrichmentResult(name=name, summary=summary, outcome=FetchOutcome.SUCCESS)

        return EnrichmentResult(name=name, outcome=FetchOutcome.ERROR)
