"""
Document and recipient test factories.

Generates column data for Document and Recipient rows.
"""

import uuid
from datetime import timezone

import factory
from faker import Faker

fake = Faker()


class DocumentFactory(factory.Factory):
    """
    Factory for generating Document test data.

    Usage:
        data = DocumentFactory()
        data = DocumentFactory(status="out_for_signature", signing_flow="PARALLEL")
    """

    class Meta:
        model = dict

    id = factory.LazyFunction(lambda: str(uuid.uuid4()))
    title = factory.LazyFunction(lambda: f"{fake.catch_phrase()} Agreement")
    original_name = factory.LazyAttribute(lambda obj: f"{obj.title}.pdf")
    status = "out_for_signature"
    signing_flow = "SEQUENTIAL"
    remote_agreement_id = factory.LazyFunction(lambda: f"CBJCHBCAABAA{uuid.uuid4().hex[:20]}")
    reminder_count = 0
    auto_reminders = False


class SentDocumentFactory(DocumentFactory):
    """Factory for documents just handed to the provider."""

    status = "sent_for_signature"


class FailedSendDocumentFactory(DocumentFactory):
    """Factory for documents whose send failed before an agreement id was recorded."""

    status = "ready_for_signature"
    remote_agreement_id = None


class RecipientFactory(factory.Factory):
    """
    Factory for generating Recipient test data.

    Usage:
        data = RecipientFactory(order=2, status="sent")
    """

    class Meta:
        model = dict

    email = factory.LazyFunction(lambda: fake.unique.email().lower())
    name = factory.LazyFunction(fake.name)
    order = factory.Sequence(lambda n: n + 1)
    role = "signer"
    status = "sent"


class SignedRecipientFactory(RecipientFactory):
    """Factory for recipients that already signed."""

    status = "signed"
    signed_at = factory.LazyFunction(lambda: fake.date_time_this_month(tzinfo=timezone.utc))
