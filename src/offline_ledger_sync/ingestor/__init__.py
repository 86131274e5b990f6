"""Data ingestion layer - Remote ledger indexer access."""

from offline_ledger_sync.ingestor.fetcher import FetchResult, RemoteFetcher
from offline_ledger_sync.ingestor.indexer_client import (
    IndexerClient,
    IndexerClientError,
    IndexerNotFoundError,
    IndexerTransientError,
    RetryError,
)

__all__ = [
    "FetchResult",
    "IndexerClient",
    "IndexerClientError",
    "IndexerNotFoundError",
    "IndexerTransientError",
    "RemoteFetcher",
    "RetryError",
]
