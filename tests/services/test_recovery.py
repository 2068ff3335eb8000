"""
Tests for recovery after ambiguous send failures.

The provider is the in-memory mock; search rows are plain dicts in the
shape the provider's agreement search returns.
"""

from datetime import timedelta

import pytest

from esign.exceptions import RemoteAmbiguousError, RemoteRejectedError
from esign.models.document import DocumentStatus, RecipientStatus
from esign.services.document_repository import DocumentRepository
from esign.utils.timestamps import utcnow
from tests.factories import AgreementPayloadFactory, FailedSendDocumentFactory, RecipientFactory

ALL_STRATEGIES = ["direct_lookup", "recipient_search", "name_search"]


def search_row(agreement_id, name, minutes_ago=10, recipients=None, dated=True):
    row = {"id": agreement_id, "name": name, "status": "OUT_FOR_SIGNATURE", "recipients": recipients or []}
    if dated:
        row["displayDate"] = (utcnow() - timedelta(minutes=minutes_ago)).isoformat()
    return row


@pytest.fixture
def failed_document(make_document):
    async def _make(**overrides):
        recipient = RecipientFactory(order=1, status="pending")
        return await make_document(recipients=[recipient], **FailedSendDocumentFactory(**overrides))

    return _make


class TestSearchRecovery:
    """A failed send is adopted only for a fresh, exactly named agreement."""

    @pytest.mark.asyncio
    async def test_fresh_recipient_match_is_adopted(self, services, mock_client, failed_document,
                                                    load_document, session_factory):
        document = await failed_document()
        email = document.recipients[0].email
        mock_client.search_results = [search_row("ag-new", document.title, minutes_ago=10, recipients=[email])]

        result = await services.recovery.recover_document(document.id)

        assert result.success
        assert result.recovery_method == "recipient_search"
        assert result.agreement_id == "ag-new"
        stored = await load_document(document.id)
        assert stored.status == DocumentStatus.sent_for_signature.value
        assert stored.remote_agreement_id == "ag-new"
        assert stored.recovery_applied
        assert stored.recovered_at is not None
        assert [r.status for r in stored.recipients] == [RecipientStatus.sent.value]

        async with session_factory() as session:
            events = await DocumentRepository(session).list_events(document.id)
        assert [e.action for e in events] == ["recovery_applied"]

    @pytest.mark.asyncio
    async def test_stale_match_is_rejected(self, services, mock_client, failed_document, load_document):
        document = await failed_document()
        email = document.recipients[0].email
        mock_client.search_results = [search_row("ag-old", document.title, minutes_ago=120, recipients=[email])]

        result = await services.recovery.recover_document(document.id)

        assert not result.success
        assert result.strategies_tried == ALL_STRATEGIES
        stored = await load_document(document.id)
        assert stored.status == DocumentStatus.ready_for_signature.value
        assert stored.remote_agreement_id is None

    @pytest.mark.asyncio
    async def test_undated_match_is_rejected(self, services, mock_client, failed_document):
        document = await failed_document()
        mock_client.search_results = [search_row("ag-x", document.title, dated=False)]

        result = await services.recovery.recover_document(document.id)

        assert not result.success

    @pytest.mark.asyncio
    async def test_name_must_match_exactly(self, services, mock_client, failed_document):
        document = await failed_document()
        mock_client.search_results = [search_row("ag-x", f"{document.title} (copy)")]

        result = await services.recovery.recover_document(document.id)

        assert not result.success

    @pytest.mark.asyncio
    async def test_original_filename_is_searched(self, services, mock_client, failed_document):
        document = await failed_document(original_name="lease-2024.pdf")
        mock_client.search_results = [search_row("ag-file", "lease-2024.pdf")]

        result = await services.recovery.recover_document(document.id)

        assert result.success
        assert result.agreement_id == "ag-file"
        assert result.recovery_method == "verification"
        assert result.strategies_tried == ALL_STRATEGIES

    @pytest.mark.asyncio
    async def test_failing_strategy_falls_through(self, services, mock_client, failed_document):
        document = await failed_document()
        mock_client.search_results = [search_row("ag-new", document.title)]
        mock_client.queue_error("search_agreements_by_name", RemoteAmbiguousError("read timeout"))

        result = await services.recovery.recover_document(document.id)

        assert result.success
        assert result.agreement_id == "ag-new"

    @pytest.mark.asyncio
    async def test_recorded_agreement_is_verified_directly(self, services, mock_client, failed_document):
        document = await failed_document(status="processing", remote_agreement_id="ag-recorded")
        mock_client.set_agreement("ag-recorded", AgreementPayloadFactory(id="ag-recorded", name=document.title))

        result = await services.recovery.recover_document(document.id)

        assert result.success
        assert result.agreement_id == "ag-recorded"
        assert result.strategies_tried == ["direct_lookup"]

    @pytest.mark.asyncio
    async def test_agreement_owned_by_another_document(self, services, mock_client, make_document,
                                                       failed_document, load_document):
        other = await make_document(remote_agreement_id="ag-taken")
        document = await failed_document(title=other.title)
        mock_client.search_results = [search_row("ag-taken", other.title)]

        result = await services.recovery.recover_document(document.id)

        assert not result.success
        stored = await load_document(document.id)
        assert stored.remote_agreement_id is None


class TestAggressiveRecovery:
    @pytest.mark.asyncio
    async def test_disabled_by_default(self, services, failed_document):
        document = await failed_document()
        result = await services.recovery.recover_document(document.id)
        assert not result.success
        assert not result.recovery_applied

    @pytest.mark.asyncio
    async def test_marks_sent_without_agreement(self, services, failed_document, load_document):
        document = await failed_document()

        result = await services.recovery.recover_document(document.id, aggressive=True)

        assert result.success
        assert result.recovery_method == "aggressive"
        assert not result.verified
        stored = await load_document(document.id)
        assert stored.status == DocumentStatus.sent_for_signature.value
        assert stored.remote_agreement_id is None
        assert stored.recovery_method == "aggressive"


class TestRecoveryGuards:
    @pytest.mark.asyncio
    async def test_clean_failure_is_not_recovered(self, services, mock_client, failed_document):
        document = await failed_document()

        result = await services.recovery.recover_after_failure(
            document.id, RemoteRejectedError("HTTP 400: bad request", 400), aggressive=True
        )

        assert not result.success
        assert mock_client.calls == []

    @pytest.mark.asyncio
    async def test_ambiguous_failure_is_recovered(self, services, mock_client, failed_document):
        document = await failed_document()
        mock_client.search_results = [search_row("ag-new", document.title)]

        result = await services.recovery.recover_after_failure(document.id, RemoteAmbiguousError("read timeout"))

        assert result.success
        assert result.agreement_id == "ag-new"

    @pytest.mark.asyncio
    async def test_already_sent_short_circuits(self, services, mock_client, make_document):
        document = await make_document()

        result = await services.recovery.recover_document(document.id)

        assert result.success
        assert result.already_sent
        assert mock_client.calls == []

    @pytest.mark.asyncio
    async def test_force_check_verifies_recorded_agreement(self, services, mock_client, make_document):
        document = await make_document()
        mock_client.set_agreement(document.remote_agreement_id,
                                  AgreementPayloadFactory(id=document.remote_agreement_id))

        result = await services.recovery.recover_document(document.id, force_check=True)

        assert result.success
        assert result.verified
        assert result.already_sent

    @pytest.mark.asyncio
    async def test_ineligible_status(self, services, failed_document):
        document = await failed_document(status="cancelled")
        result = await services.recovery.recover_document(document.id)
        assert not result.success

    @pytest.mark.asyncio
    async def test_rate_limited(self, services, mock_client, guard, failed_document):
        document = await failed_document()
        guard.set_rate_limit(60)

        result = await services.recovery.recover_document(document.id, aggressive=True)

        assert not result.success
        assert mock_client.calls == []

    @pytest.mark.asyncio
    async def test_unknown_document(self, services):
        assert await services.recovery.recover_document("missing") is None
