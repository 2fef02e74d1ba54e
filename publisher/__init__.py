"""Publishing to the append-only storage network."""

from publisher.network import DryRunNetworkClient, HttpNetworkStorageClient, NetworkStorageClient
from publisher.scheduler import PublishScheduler

__all__ = [
    "DryRunNetworkClient",
    "HttpNetworkStorageClient",
    "NetworkStorageClient",
    "PublishScheduler",
]
