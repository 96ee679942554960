from .links import VerificationLinksMixin
from .outcomes import VerificationOutcomesMixin
from .records import VerificationRecordsMixin
from .schema import VerificationSchemaMixin

__all__ = [
    "VerificationSchemaMixin",
    "VerificationLinksMixin",
    "VerificationRecordsMixin",
    "VerificationOutcomesMixin",
]
