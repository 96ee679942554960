from .cache import EvidenceCache
from .engine import VerificationEngine, apply_role_grants, log_outcomes
from .scheduler import BatchScheduler
from .throttle import RequestController

__all__ = [
    "BatchScheduler",
    "EvidenceCache",
    "RequestController",
    "VerificationEngine",
    "apply_role_grants",
    "log_outcomes",
]
