"""
Tests for the reconciliation engine.

Exercises the engine directly on unsaved documents: idempotence, monotonic
timestamps, decline precedence, the agreement completion override, the
unknown-status fallback and matching rules.
"""

from datetime import datetime, timedelta, timezone

import pytest

from esign.models.document import Document, DocumentStatus, Recipient, RecipientStatus
from esign.services.agreement_snapshot import parse_agreement_snapshot
from esign.services.reconciliation import (
    AgreementCompletionOverride,
    ReconciliationEngine,
    derive_document_status,
)
from tests.factories import AgreementPayloadFactory, MemberInfoFactory, ParticipantSetFactory

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def build_document(recipients, status="out_for_signature", signing_flow="SEQUENTIAL") -> Document:
    document = Document(
        id="doc-1",
        title="Master Services Agreement",
        status=status,
        signing_flow=signing_flow,
        remote_agreement_id="ag-1",
    )
    document.recipients = [
        Recipient(
            email=r["email"],
            name=r.get("name"),
            order=r["order"],
            role=r.get("role", "signer"),
            status=r.get("status", "sent"),
            signed_at=r.get("signed_at"),
            last_signing_url_accessed=r.get("last_signing_url_accessed"),
            delegated_to=r.get("delegated_to"),
        )
        for r in recipients
    ]
    return document


def snapshot_of(status, members, events=None):
    """members: list of (order, member-info dict)."""
    sets = [ParticipantSetFactory(order=order, status=m.get("status"), memberInfos=[m]) for order, m in members]
    return parse_agreement_snapshot(AgreementPayloadFactory(id="ag-1", status=status, participantSets=sets),
                                    events=events)


@pytest.fixture
def engine():
    return ReconciliationEngine(clock=lambda: NOW)


class TestIdempotence:
    """Reconciling the same snapshot twice changes nothing the second time."""

    def test_second_pass_is_empty(self, engine):
        document = build_document([
            {"email": "a@x.com", "order": 1},
            {"email": "b@x.com", "order": 2, "status": "waiting"},
        ])
        snapshot = snapshot_of("OUT_FOR_SIGNATURE", [
            (1, MemberInfoFactory(email="a@x.com", status="SIGNED", completedDate="2024-05-30T08:00:00Z")),
            (2, MemberInfoFactory(email="b@x.com", status="WAITING_FOR_MY_SIGNATURE")),
        ])

        first = engine.reconcile(document, snapshot, now=NOW)
        second = engine.reconcile(document, snapshot, now=NOW)

        assert first.changed
        assert second.changes == []
        assert document.status == DocumentStatus.partially_signed.value

    def test_idempotent_under_completion_override(self, engine):
        document = build_document([{"email": "a@x.com", "order": 1}, {"email": "b@x.com", "order": 2}])
        snapshot = snapshot_of("SIGNED", [
            (1, MemberInfoFactory(email="a@x.com", status="ACTIVE")),
            (2, MemberInfoFactory(email="b@x.com", status="ACTIVE")),
        ])

        engine.reconcile(document, snapshot, now=NOW)
        second = engine.reconcile(document, snapshot, now=NOW + timedelta(minutes=5))

        assert second.changes == []


class TestMonotonicTimestamps:
    """Stored timestamps never move backwards."""

    def test_older_completion_date_does_not_rewind_signed_at(self, engine):
        stored = datetime(2024, 5, 31, tzinfo=timezone.utc)
        document = build_document([{"email": "a@x.com", "order": 1, "status": "signed", "signed_at": stored}])
        snapshot = snapshot_of("SIGNED", [
            (1, MemberInfoFactory(email="a@x.com", status="SIGNED", completedDate="2024-05-01T00:00:00Z")),
        ])

        engine.reconcile(document, snapshot, now=NOW)

        assert document.recipients[0].signed_at == stored

    def test_newer_access_date_advances(self, engine):
        stored = datetime(2024, 5, 1, tzinfo=timezone.utc)
        document = build_document([{"email": "a@x.com", "order": 1, "last_signing_url_accessed": stored}])
        snapshot = snapshot_of("OUT_FOR_SIGNATURE", [
            (1, MemberInfoFactory(email="a@x.com", status="ACTIVE", accessDate="2024-05-20T00:00:00Z")),
        ])

        engine.reconcile(document, snapshot, now=NOW)

        assert document.recipients[0].last_signing_url_accessed == datetime(2024, 5, 20, tzinfo=timezone.utc)

    def test_signed_at_from_event_log(self, engine):
        document = build_document([{"email": "a@x.com", "order": 1}])
        events = {"events": [{"type": "ESIGNED", "participantEmail": "a@x.com", "date": "2024-05-29T15:00:00Z"}]}
        snapshot = snapshot_of("SIGNED", [(1, MemberInfoFactory(email="a@x.com", status="SIGNED"))], events)

        engine.reconcile(document, snapshot, now=NOW)

        assert document.recipients[0].signed_at == datetime(2024, 5, 29, 15, tzinfo=timezone.utc)

    def test_signed_at_falls_back_to_now(self, engine):
        document = build_document([{"email": "a@x.com", "order": 1}])
        snapshot = snapshot_of("SIGNED", [(1, MemberInfoFactory(email="a@x.com", status="SIGNED"))])

        engine.reconcile(document, snapshot, now=NOW)

        assert document.recipients[0].signed_at == NOW
        assert document.completed_at == NOW


class TestStatusDerivation:
    """Document status precedence."""

    def test_decline_beats_signatures(self, engine):
        document = build_document([{"email": "a@x.com", "order": 1}, {"email": "b@x.com", "order": 2}])
        snapshot = snapshot_of("OUT_FOR_SIGNATURE", [
            (1, MemberInfoFactory(email="a@x.com", status="SIGNED")),
            (2, MemberInfoFactory(email="b@x.com", status="DECLINED")),
        ])

        engine.reconcile(document, snapshot, now=NOW)

        assert document.status == DocumentStatus.cancelled.value

    def test_expired_participant_expires_document(self, engine):
        document = build_document([{"email": "a@x.com", "order": 1}])
        snapshot = snapshot_of("OUT_FOR_SIGNATURE", [(1, MemberInfoFactory(email="a@x.com", status="EXPIRED"))])
        engine.reconcile(document, snapshot, now=NOW)
        assert document.status == DocumentStatus.expired.value

    def test_all_waiting_is_sent_for_signature(self):
        document = build_document([
            {"email": "a@x.com", "order": 1, "status": "waiting"},
            {"email": "b@x.com", "order": 2, "status": "waiting"},
        ])
        assert derive_document_status(document.recipients) == DocumentStatus.sent_for_signature

    def test_cc_recipients_do_not_block_completion(self):
        document = build_document([
            {"email": "a@x.com", "order": 1, "status": "signed"},
            {"email": "cc@x.com", "order": 2, "role": "cc", "status": "sent"},
        ])
        assert derive_document_status(document.recipients) == DocumentStatus.completed

    def test_delegated_recipients_are_ignored(self):
        document = build_document([
            {"email": "a@x.com", "order": 1, "status": "waiting", "delegated_to": "c@x.com"},
            {"email": "c@x.com", "order": 1, "status": "signed"},
        ])
        assert derive_document_status(document.recipients) == DocumentStatus.completed

    def test_terminal_document_is_not_reopened(self, engine):
        document = build_document([{"email": "a@x.com", "order": 1, "status": "signed"}], status="completed")
        snapshot = snapshot_of("OUT_FOR_SIGNATURE", [(1, MemberInfoFactory(email="a@x.com", status="ACTIVE"))])

        engine.reconcile(document, snapshot, now=NOW)

        assert document.status == DocumentStatus.completed.value

    def test_lagging_snapshot_keeps_recorded_signature(self, engine):
        signed_at = datetime(2024, 5, 31, 9, 0, tzinfo=timezone.utc)
        document = build_document([
            {"email": "a@x.com", "order": 1, "status": "signed", "signed_at": signed_at},
            {"email": "b@x.com", "order": 2, "status": "waiting"},
        ], status="partially_signed")
        snapshot = snapshot_of("OUT_FOR_SIGNATURE", [
            (1, MemberInfoFactory(email="a@x.com", status="ACTIVE")),
            (2, MemberInfoFactory(email="b@x.com", status="NOT_YET_VISIBLE")),
        ])

        result = engine.reconcile(document, snapshot, now=NOW)

        assert document.recipients[0].status == RecipientStatus.signed.value
        assert document.recipients[0].signed_at == signed_at
        assert document.status == DocumentStatus.partially_signed.value
        assert not any(c.field == "status" and c.entity == "document" for c in result.changes)

    def test_document_status_never_moves_backwards(self, engine):
        document = build_document([{"email": "a@x.com", "order": 1, "status": "sent"}],
                                  status="out_for_signature")
        snapshot = snapshot_of("OUT_FOR_SIGNATURE", [(1, MemberInfoFactory(email="a@x.com",
                                                                            status="NOT_YET_VISIBLE"))])

        engine.reconcile(document, snapshot, now=NOW)

        assert document.recipients[0].status == RecipientStatus.waiting.value
        assert document.status == DocumentStatus.out_for_signature.value

    def test_status_still_moves_forward(self, engine):
        document = build_document([{"email": "a@x.com", "order": 1, "status": "waiting"}],
                                  status="sent_for_signature")
        snapshot = snapshot_of("OUT_FOR_SIGNATURE", [(1, MemberInfoFactory(email="a@x.com", status="ACTIVE"))])

        engine.reconcile(document, snapshot, now=NOW)

        assert document.status == DocumentStatus.out_for_signature.value


class TestCompletionOverride:
    """An agreement reported complete completes the document."""

    def test_stale_participants_forced_to_signed(self, engine):
        document = build_document([{"email": "a@x.com", "order": 1}, {"email": "b@x.com", "order": 2}])
        snapshot = snapshot_of("SIGNED", [
            (1, MemberInfoFactory(email="a@x.com", status="SIGNED")),
            (2, MemberInfoFactory(email="b@x.com", status="WAITING_FOR_MY_SIGNATURE")),
        ])

        result = engine.reconcile(document, snapshot, now=NOW)

        assert result.override_applied
        assert [r.status for r in document.recipients] == ["signed", "signed"]
        assert all(r.signed_at is not None for r in document.recipients)
        assert document.status == DocumentStatus.completed.value
        assert document.completed_at is not None

    def test_override_without_participant_data(self, engine):
        document = build_document([{"email": "a@x.com", "order": 1}])
        snapshot = parse_agreement_snapshot({"id": "ag-1", "status": "COMPLETED"})

        result = engine.reconcile(document, snapshot, now=NOW)

        assert result.degraded
        assert result.override_applied
        assert document.status == DocumentStatus.completed.value

    def test_override_can_be_disabled(self):
        engine = ReconciliationEngine(completion_override=AgreementCompletionOverride(enabled=False))
        document = build_document([{"email": "a@x.com", "order": 1}])
        snapshot = snapshot_of("SIGNED", [(1, MemberInfoFactory(email="a@x.com", status="ACTIVE"))])

        result = engine.reconcile(document, snapshot, now=NOW)

        assert not result.override_applied
        assert document.recipients[0].status == RecipientStatus.sent.value
        assert document.status == DocumentStatus.out_for_signature.value

    def test_unknown_token_on_completed_agreement(self):
        engine = ReconciliationEngine(completion_override=AgreementCompletionOverride(enabled=False))
        document = build_document([{"email": "a@x.com", "order": 1}])
        snapshot = snapshot_of("SIGNED", [(1, MemberInfoFactory(email="a@x.com", status="SOMETHING_NEW"))])

        engine.reconcile(document, snapshot, now=NOW)

        assert document.recipients[0].status == RecipientStatus.signed.value


class TestMatching:
    """Member to recipient matching."""

    def test_email_match_is_case_insensitive(self, engine):
        document = build_document([{"email": "Alice@Example.com", "order": 1}])
        snapshot = snapshot_of("OUT_FOR_SIGNATURE", [
            (1, MemberInfoFactory(email="alice@example.COM", status="SIGNED")),
        ])
        engine.reconcile(document, snapshot, now=NOW)
        assert document.recipients[0].status == RecipientStatus.signed.value

    def test_viewed_is_not_downgraded(self, engine):
        document = build_document([{"email": "a@x.com", "order": 1, "status": "viewed"}])
        snapshot = snapshot_of("OUT_FOR_SIGNATURE", [(1, MemberInfoFactory(email="a@x.com", status="ACTIVE"))])

        result = engine.reconcile(document, snapshot, now=NOW)

        assert document.recipients[0].status == RecipientStatus.viewed.value
        assert result.changes == []

    def test_positional_match_for_sequential_documents(self, engine):
        document = build_document([{"email": "a@x.com", "order": 1}, {"email": "b@x.com", "order": 2}])
        snapshot = parse_agreement_snapshot({"id": "ag-1", "status": "OUT_FOR_SIGNATURE", "participants": [
            {"participantId": "p-1", "order": 1, "status": "SIGNED"},
            {"participantId": "p-2", "order": 2, "status": "WAITING_FOR_MY_SIGNATURE"},
        ]})

        result = engine.reconcile(document, snapshot, now=NOW)

        assert result.positional_matches == ["a@x.com", "b@x.com"]
        assert document.recipients[0].status == RecipientStatus.signed.value

    def test_no_positional_match_for_parallel_documents(self, engine):
        document = build_document([{"email": "a@x.com", "order": 1}], signing_flow="PARALLEL")
        snapshot = parse_agreement_snapshot({"id": "ag-1", "status": "OUT_FOR_SIGNATURE", "participants": [
            {"participantId": "p-1", "order": 1, "status": "SIGNED"},
        ]})

        result = engine.reconcile(document, snapshot, now=NOW)

        assert result.unmatched_members == ["p-1"]
        assert document.recipients[0].status == RecipientStatus.sent.value

    def test_unknown_remote_member_is_reported(self, engine):
        document = build_document([{"email": "a@x.com", "order": 1}])
        snapshot = snapshot_of("OUT_FOR_SIGNATURE", [(1, MemberInfoFactory(email="stranger@x.com"))])
        result = engine.reconcile(document, snapshot, now=NOW)
        assert result.unmatched_members == ["stranger@x.com"]


class TestDegradedSnapshots:
    def test_recipients_untouched_without_participant_data(self, engine):
        document = build_document([{"email": "a@x.com", "order": 1, "status": "viewed"}])
        snapshot = parse_agreement_snapshot({"id": "ag-1", "status": "OUT_FOR_SIGNATURE"})

        result = engine.reconcile(document, snapshot, now=NOW)

        assert result.degraded
        assert result.changes == []
        assert document.status == DocumentStatus.out_for_signature.value

    def test_cancelled_agreement_still_cancels(self, engine):
        document = build_document([{"email": "a@x.com", "order": 1}])
        snapshot = parse_agreement_snapshot({"id": "ag-1", "status": "CANCELLED"})

        engine.reconcile(document, snapshot, now=NOW)

        assert document.status == DocumentStatus.cancelled.value
