"""
Test factories for generating realistic test data.

Uses factory_boy for declarative test data generation.
"""

from .document import (
    DocumentFactory,
    SentDocumentFactory,
    FailedSendDocumentFactory,
    RecipientFactory,
    SignedRecipientFactory,
)
from .snapshot import (
    MemberInfoFactory,
    ParticipantSetFactory,
    AgreementPayloadFactory,
    participant_set_for,
)

__all__ = [
    "DocumentFactory",
    "SentDocumentFactory",
    "FailedSendDocumentFactory",
    "RecipientFactory",
    "SignedRecipientFactory",
    # Provider payloads
    "MemberInfoFactory",
    "ParticipantSetFactory",
    "AgreementPayloadFactory",
    "participant_set_for",
]
