"""
Signing provider payload factories.

Builds agreement JSON in the shape the provider returns it.
"""

import uuid

import factory
from faker import Faker

fake = Faker()


class MemberInfoFactory(factory.Factory):
    """
    Factory for a participant set member.

    Usage:
        member = MemberInfoFactory(email="a@example.com", status="ACTIVE")
    """

    class Meta:
        model = dict

    id = factory.LazyFunction(lambda: f"member-{uuid.uuid4().hex[:8]}")
    email = factory.LazyFunction(lambda: fake.unique.email().lower())
    name = factory.LazyFunction(fake.name)
    status = "ACTIVE"


class ParticipantSetFactory(factory.Factory):
    """
    Factory for a participant set with one member.

    Usage:
        participant_set = ParticipantSetFactory(order=2, memberInfos=[MemberInfoFactory()])
    """

    class Meta:
        model = dict

    id = factory.LazyFunction(lambda: f"set-{uuid.uuid4().hex[:8]}")
    order = factory.Sequence(lambda n: n + 1)
    role = "SIGNER"
    status = "ACTIVE"
    memberInfos = factory.LazyFunction(lambda: [MemberInfoFactory()])


class AgreementPayloadFactory(factory.Factory):
    """
    Factory for a full agreement payload.

    Usage:
        payload = AgreementPayloadFactory(status="SIGNED", participantSets=[...])
    """

    class Meta:
        model = dict

    id = factory.LazyFunction(lambda: f"CBJCHBCAABAA{uuid.uuid4().hex[:20]}")
    name = factory.LazyFunction(lambda: f"{fake.catch_phrase()} Agreement")
    status = "OUT_FOR_SIGNATURE"
    createdDate = factory.LazyFunction(lambda: fake.date_time_this_month().isoformat() + "Z")
    participantSets = factory.LazyFunction(lambda: [ParticipantSetFactory(order=1)])


def participant_set_for(recipient: dict, status: str = "ACTIVE", member_id: str | None = None, **extra) -> dict:
    """Participant set mirroring a RecipientFactory row."""
    member = MemberInfoFactory(
        email=recipient["email"],
        name=recipient.get("name"),
        status=status,
        **({"id": member_id} if member_id else {}),
        **extra,
    )
    return ParticipantSetFactory(order=recipient["order"], status=status, memberInfos=[member])
