
from .base import EvidenceProvider, ProviderRouter
from .dashboard import DashboardEvidenceProvider
from .explorer import ExplorerEvidenceProvider
from .http import JsonHttpClient
from .swarm import SwarmContractEvidenceProvider

__all__ = [
    "DashboardEvidenceProvider",
    "EvidenceProvider",
    "ExplorerEvidenceProvider",
    "JsonHttpClient",
    "ProviderRouter",
    "SwarmContractEvidenceProvider",
]
