import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Sequence

import httpx

from portfolio_core.config import Config
from portfolio_core.fetcher import (
    GitHubFetcher,
    RepositorySourceError,
    exclude_candidates,
    is_valid_handle,
)
from portfolio_core.models import (
    AggregationResult,
    AggregationStatus,
    EnrichmentResult,
    FetchOutcome,
    ProjectRecord,
    RepositoryCandidate,
)

logger = logging.getLogger(__name__)


class ProjectAggregator:
    """Builds the bounded, recency-ordered project list for a GitHub user.

    Only the repository listing can fail a run. Readme enrichment is
    best-effort: every fetch settles on its own and a failed one leaves the
    project with its GitHub description or the placeholder text.
    """

    def __init__(self, config: Optional[Config] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or Config()
        self.projects_config = self.config.projects
        self._transport = transport

    async def build_project_list(self, handle: Optional[str] = None, limit: Optional[int] = None) -> AggregationResult:
        if handle is None:
            handle = self.projects_config.handle
        if limit is None:
            limit = self.projects_config.limit
        start_time = datetime.now()

        if not is_valid_handle(handle):
            logger.error(f"Cannot build project list: invalid GitHub handle {handle!r}")
            return AggregationResult(
                status=AggregationStatus.FAILED,
                error="A valid GitHub username is required",
                reason="invalid_handle",
            )
        if limit < 1:
            logger.error(f"Cannot build project list: limit must be at least 1, got {limit}")
            return AggregationResult(
                status=AggregationStatus.FAILED,
                error="The project limit must be at least 1",
                reason="invalid_limit",
            )

        fetch_count = max(self.projects_config.fetch_count, limit)

        async with GitHubFetcher(self.config, transport=self._transport) as fetcher:
            logger.info(f"Step 1: Listing up to {fetch_count} repositories for {handle}...")
            try:
                candidates = await fetcher.list_repositories(handle, fetch_count)
            except RepositorySourceError as e:
                logger.error(f"Repository listing failed ({e.reason}): {e}")
                return AggregationResult(
                    status=AggregationStatus.FAILED,
                    error=e.user_message,
                    reason=e.reason,
                )

            logger.info(f"Step 2: Selecting up to {limit} of {len(candidates)} candidates...")
            selected = exclude_candidates(candidates, handle, self.projects_config.exclude_forks)[:limit]

            logger.info(f"Step 3: Enriching {len(selected)} repositories with README summaries...")
            enrichments = await self.enrich_all(fetcher, handle, selected)

        projects = merge_projects(selected, enrichments)
        failed = [e.name for e in enrichments if e.outcome == FetchOutcome.ERROR]
        if failed:
            logger.warning(f"README enrichment failed for: {', '.join(failed)}")
            status = AggregationStatus.DEGRADED
        else:
            status = AggregationStatus.LOADED

        logger.info(
            f"Built {len(projects)} projects for {handle} "
            f"in {(datetime.now() - start_time).total_seconds():.2f}s"
        )
        return AggregationResult(status=status, projects=projects)

    async def enrich_all(
        self,
        fetcher: GitHubFetcher,
        handle: str,
        candidates: Sequence[RepositoryCandidate]
    ) -> List[EnrichmentResult]:
        """Fetch every readme concurrently and wait for all of them to settle."""
        settled = await asyncio.gather(
            *(fetcher.fetch_summary(handle, candidate.name) for candidate in candidates),
            return_exceptions=True,
        )

        results = []
        for candidate, outcome in zip(candidates, settled):
            if isinstance(outcome, BaseException):
                logger.warning(f"README enrichment for {candidate.name} raised {type(outcome).__name__}")
                outcome = EnrichmentResult(name=candidate.name, outcome=FetchOutcome.ERROR)
            results.append(outcome)
        return results


def merge_projects(
    candidates: Sequence[RepositoryCandidate],
    enrichments: Sequence[EnrichmentResult]
) -> List[ProjectRecord]:
    """Merge candidates with their enrichment by name, keeping candidate order."""
    by_name = {e.name: e for e in enrichments}
    return [ProjectRecord.merge(candidate, by_name.get(candidate.name)) for candidate in candidates]


class ProjectListLoader:
    """Holds the project list for one view and discards results that arrive too late.

    A result is applied only if it belongs to the most recent ``load()`` and
    the loader has not been closed in the meantime.
    """

    def __init__(self, aggregator: ProjectAggregator, handle: Optional[str] = None, limit: Optional[int] = None):
        self.aggregator = aggregator
        self.handle = handle
        self.limit = limit
        self.result: Optional[AggregationResult] = None
        self.loading = False
        self._generation = 0
        self._closed = False
        self._task: Optional[asyncio.Future] = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def load(self) -> Optional[AggregationResult]:
        """Run one aggregation; returns None when the result was discarded."""
        if self._closed:
            return None

        self._generation += 1
        generation = self._generation
        self.loading = True
        task = asyncio.ensure_future(self.aggregator.build_project_list(self.handle, self.limit))
        self._task = task

        try:
            result = await task
        except asyncio.CancelledError:
            if self._closed or generation != self._generation:
                return None
            raise
        finally:
            if generation == self._generation:
                self.loading = False

        if self._closed or generation != self._generation:
            logger.debug(f"Discarding stale project list from load #{generation}")
            return None

        self.result = result
        return result

    def close(self) -> None:
        self._closed = True
        self.loading = False
        if self._task is not None and not self._task.done():
            self._task.cancel()


def run_aggregation(
    config: Optional[Config] = None,
    handle: Optional[str] = None,
    limit: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> AggregationResult:
    """Synchronous entry point for callers without an event loop"""
    aggregator = ProjectAggregator(config, transport=transport)
    return asyncio.run(aggregator.build_project_list(handle, limit))
