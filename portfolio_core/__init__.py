from .config import Config, get_config
from .fetcher import GitHubFetcher, RateLimitedError, RepositorySourceError, UnauthorizedError
from .summarizer import summarize_readme
from .aggregator import ProjectAggregator, ProjectListLoader, run_aggregation
from .emailer import ContactForm, NotificationDispatcher
from .models import (
    AggregationResult,
    AggregationStatus,
    EnrichmentResult,
    FetchOutcome,
    NotificationOutcome,
    NotificationRequest,
    NotificationStatus,
    ProjectRecord,
    RepositoryCandidate,
)

__all__ = [
    'Config', 'get_config',
    'GitHubFetcher', 'RepositorySourceError', 'UnauthorizedError', 'RateLimitedError',
    'summarize_readme',
    'ProjectAggregator', 'ProjectListLoader', 'run_aggregation',
    'ContactForm', 'NotificationDispatcher',
    'AggregationResult', 'AggregationStatus', 'EnrichmentResult', 'FetchOutcome',
    'NotificationOutcome', 'NotificationRequest', 'NotificationStatus',
    'ProjectRecord', 'RepositoryCandidate',
]
