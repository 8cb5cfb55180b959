# backend/tests/test_tickets.py
from datetime import timedelta

import pytest
from sqlalchemy import select

from atelier.engine import contracts as contract_engine
from atelier.engine import tickets as engine
from atelier.engine.errors import AuthorizationError, IllegalTransition, SelectionInvalid, ValidationError
from atelier.engine.sweep import run_sweep
from atelier.models import LedgerEntry

from conftest import make_snapshot, milestone_snapshot


def _cancel(market, contract, actor=None, work=50, description="cannot continue"):
    return engine.open_cancel(
        market.db, actor or market.client, contract.id, description, ["chat.png"], work, market.now, market.policy
    )


def _revision(market, contract, milestone_idx=None):
    return engine.open_revision(
        market.db, market.client, contract.id, "hair colour should be red", [], milestone_idx,
        market.now, market.policy,
    )


def _change(market, contract, *aspects, description=None):
    change = engine.ChangeRequest.model_validate({"aspects": list(aspects)})
    return engine.open_change(market.db, market.client, contract.id, change, description, [],
                              market.now, market.policy)


def _respond(market, ticket, actor, accept=True, fee=None, evidence=None):
    return engine.respond(
        market.db, actor, ticket.id, accept, "noted", evidence or [], fee, market.now, market.policy
    )


# -----------------------------
# Cancellation
# -----------------------------
def test_unanswered_cancel_ticket_lapses_to_review(market):
    contract = market.contract()
    ticket = _cancel(market, contract)
    assert ticket.status == "open"
    assert ticket.counter_expires_at == market.now + timedelta(hours=48)

    market.clock.advance(hours=47)
    assert run_sweep(market.db, market.now, market.policy).tickets_lapsed == 0

    market.clock.advance(hours=1)
    assert run_sweep(market.db, market.now, market.policy).tickets_lapsed == 1
    market.db.refresh(ticket)
    assert ticket.status == "awaitingReview"
    assert ticket.counter_evidence == []
    assert ticket.outcome == "noResponse"

    with pytest.raises(IllegalTransition):
        _respond(market, ticket, market.artist)


def test_opened_tickets_are_logged_with_their_kind(market):
    contract = market.contract()
    cancel = _cancel(market, contract)
    revision = _revision(market, contract)
    change = _change(market, contract, {"aspect": "description", "description": "Knight at dawn"})

    opened = [e for e in contract.events if e.kind == "ticket.opened"]
    assert [e.payload["ticket_id"] for e in opened] == [cancel.id, revision.id, change.id]
    assert [e.payload["ticket_kind"] for e in opened] == ["cancel", "revision", "change"]
    assert opened[1].payload["fee"] == 0
    assert opened[2].payload["aspects"] == ["description"]


def test_accepted_client_cancel_settles_contract(market):
    contract = market.contract()
    ticket = _cancel(market, contract, work=50)
    _respond(market, ticket, market.artist)

    assert ticket.status == "resolved"
    assert ticket.outcome == "accepted"
    assert contract.status == "cancelledClient"
    # W = 60,000 plus a 10% cancellation fee of 12,000
    assert contract.owed_to_artist == 72000
    assert contract.owed_to_client == 48000


def test_late_artist_cancel(market):
    contract = market.contract()
    market.clock.advance(days=15)
    ticket = _cancel(market, contract, actor=market.artist, work=50)
    _respond(market, ticket, market.client)

    assert contract.status == "cancelledArtistLate"
    # max(0, W - P - F) = 60,000 - 12,000 - 12,000
    assert contract.owed_to_artist == 36000
    assert contract.owed_to_client == 84000


def test_one_pending_cancel_at_a_time(market):
    contract = market.contract()
    first = _cancel(market, contract)
    with pytest.raises(IllegalTransition):
        _cancel(market, contract, actor=market.artist)

    _respond(market, first, market.artist, accept=False)
    assert first.status == "awaitingReview"
    assert first.outcome == "rejected"
    with pytest.raises(IllegalTransition):
        _cancel(market, contract, actor=market.artist)

    engine.withdraw(market.db, market.client, first.id, market.now)
    assert first.status == "cancelled"
    assert _cancel(market, contract, actor=market.artist).status == "open"


def test_cancel_requires_description_and_valid_work(market):
    contract = market.contract()
    with pytest.raises(ValidationError):
        _cancel(market, contract, description="  ")
    with pytest.raises(ValidationError):
        _cancel(market, contract, work=120)


def test_only_counterparty_may_respond(market):
    contract = market.contract()
    ticket = _cancel(market, contract)
    with pytest.raises(AuthorizationError):
        _respond(market, ticket, market.client)
    with pytest.raises(AuthorizationError):
        _respond(market, ticket, market.outsider)
    with pytest.raises(ValidationError):
        _respond(market, ticket, market.artist, fee=5000)


def test_response_after_window_is_refused(market):
    contract = market.contract()
    ticket = _cancel(market, contract)
    market.clock.advance(hours=48)
    with pytest.raises(IllegalTransition) as exc:
        _respond(market, ticket, market.artist)
    assert exc.value.current == "lapsed"


# -----------------------------
# Revisions
# -----------------------------
def test_revision_fees_after_free_quota(market):
    contract = market.contract()
    free = _revision(market, contract)
    assert free.fee == 0
    _respond(market, free, market.artist)
    assert contract.runtime_fees == 0

    paid = _revision(market, contract)
    assert paid.fee == 10000
    assert contract.revisions_used == 2
    _respond(market, paid, market.artist)

    assert paid.runtime_fee == 10000
    assert contract.runtime_fees == 10000
    assert contract.total == 130000
    keys = {e.dedupe_key for e in market.db.scalars(select(LedgerEntry))}
    assert f"ticket:{paid.id}:runtimeFee" in keys


def test_withdrawn_revision_releases_its_slot(market):
    contract = market.contract()
    ticket = _revision(market, contract)
    assert contract.revisions_used == 1
    engine.withdraw(market.db, market.client, ticket.id, market.now)
    assert contract.revisions_used == 0
    assert _revision(market, contract).fee == 0


def test_granted_revision_is_fulfilled_by_upload(market):
    contract = market.contract()
    ticket = _revision(market, contract)
    with pytest.raises(IllegalTransition):
        contract_engine.post_upload(market.db, market.artist, contract.id, "revision", ["v2.png"], None,
                                    market.now, market.policy, revision_ticket_id=ticket.id)
    _respond(market, ticket, market.artist)

    upload = contract_engine.post_upload(market.db, market.artist, contract.id, "revision", ["v2.png"], None,
                                         market.now, market.policy, revision_ticket_id=ticket.id)
    contract_engine.review_upload(market.db, market.client, contract.id, upload.id, True,
                                  market.now, market.policy)
    assert ticket.fulfilled_at == market.now
    assert contract.status == "active"


def test_revisions_not_offered(market):
    contract = market.contract(snapshot=make_snapshot(revisions={"type": "none"}))
    with pytest.raises(ValidationError):
        _revision(market, contract)


def test_artist_cannot_request_revision(market):
    contract = market.contract()
    with pytest.raises(AuthorizationError):
        engine.open_revision(market.db, market.artist, contract.id, "self review", [], None,
                             market.now, market.policy)


def test_milestone_revision_limit(market):
    contract = market.contract(snapshot=milestone_snapshot())
    ticket = _revision(market, contract)
    assert ticket.milestone_idx == 0
    assert contract.milestones[0].revisions_used == 1
    with pytest.raises(ValidationError):
        _revision(market, contract)
    with pytest.raises(ValidationError):
        _revision(market, contract, milestone_idx=7)


# -----------------------------
# Contract changes
# -----------------------------
def test_deadline_change_must_extend_by_a_day(market):
    contract = market.contract()
    too_soon = contract.deadline_at + timedelta(hours=23)
    with pytest.raises(ValidationError):
        _change(market, contract, {"aspect": "deadline", "deadline_at": too_soon.isoformat()})

    new_deadline = contract.deadline_at + timedelta(days=6)
    ticket = _change(market, contract, {"aspect": "deadline", "deadline_at": new_deadline.isoformat()})
    assert ticket.price_delta == 0
    _respond(market, ticket, market.artist)

    assert ticket.outcome == "accepted"
    assert ticket.applied_terms_version == 2
    assert [t.version_no for t in contract.terms] == [1, 2]
    assert contract.latest_terms.source_ticket_id == ticket.id
    assert contract.deadline_at == new_deadline
    assert contract.grace_ends_at == new_deadline + timedelta(days=7)
    assert contract.total == 120000


def test_option_change_with_artist_fee(market):
    contract = market.contract()
    ticket = _change(market, contract, {
        "aspect": "generalOptions",
        "items": [{"kind": "addon", "addon_id": "bg"}, {"kind": "addon", "addon_id": "commercial"}],
    })
    assert ticket.price_delta == 50000

    _respond(market, ticket, market.artist, fee=15000)
    assert ticket.status == "awaitingReview"
    assert ticket.outcome == "feeProposed"
    assert contract.latest_terms.version_no == 1

    with pytest.raises(AuthorizationError):
        engine.confirm_fee(market.db, market.artist, ticket.id, True, market.now, market.policy)
    engine.confirm_fee(market.db, market.client, ticket.id, True, market.now, market.policy)

    assert ticket.status == "resolved"
    assert ticket.runtime_fee == 65000
    assert contract.runtime_fees == 65000
    assert contract.total == 185000
    assert contract.latest_terms.version_no == 2
    assert len(contract.latest_terms.selection["general"]) == 2


def test_declined_fee_leaves_ticket_for_withdrawal(market):
    contract = market.contract()
    ticket = _change(market, contract, {"aspect": "description", "description": "Knight, now with a dragon"})
    _respond(market, ticket, market.artist, fee=20000)
    engine.confirm_fee(market.db, market.client, ticket.id, False, market.now, market.policy)
    assert ticket.status == "awaitingReview"
    assert ticket.outcome == "feeRejected"

    with pytest.raises(IllegalTransition):
        engine.confirm_fee(market.db, market.client, ticket.id, True, market.now, market.policy)
    engine.withdraw(market.db, market.client, ticket.id, market.now)
    assert ticket.status == "cancelled"
    assert contract.latest_terms.version_no == 1


def test_change_aspects_are_checked(market):
    contract = market.contract(snapshot=make_snapshot(changeable=["description"]))
    with pytest.raises(ValidationError):
        _change(market, contract)
    with pytest.raises(ValidationError):
        _change(market, contract, {"aspect": "referenceImages", "images": ["a.png"]})
    with pytest.raises(ValidationError):
        _change(market, contract, {"aspect": "description", "description": "a"},
                {"aspect": "description", "description": "b"})

    other = market.contract()
    with pytest.raises(SelectionInvalid):
        _change(market, other, {"aspect": "generalOptions", "items": [{"kind": "addon", "addon_id": "ghost"}]})


def test_contract_without_changes(market):
    contract = market.contract(snapshot=make_snapshot(allow_contract_change=False))
    with pytest.raises(ValidationError):
        _change(market, contract, {"aspect": "description", "description": "new"})


def test_one_pending_change_at_a_time(market):
    contract = market.contract()
    _change(market, contract, {"aspect": "description", "description": "first"})
    with pytest.raises(IllegalTransition):
        _change(market, contract, {"aspect": "description", "description": "second"})


# -----------------------------
# HTTP surface
# -----------------------------
def test_ticket_endpoints(client, market):
    contract = market.contract()

    r = client.post(f"/contracts/{contract.id}/tickets/cancel", headers=market.headers(market.client),
                    json={"description": "moving abroad", "work_percentage": 20})
    assert r.status_code == 201, r.text
    ticket = r.json()
    assert ticket["status"] == "open"
    assert ticket["counterparty_role"] == "artist"

    r = client.post(f"/contracts/{contract.id}/tickets/refund", headers=market.headers(market.client), json={})
    assert r.status_code == 422

    r = client.post(f"/contracts/{contract.id}/tickets/change", headers=market.headers(market.client), json={})
    assert r.status_code == 422
    assert r.json()["error"] == "ValidationError"

    r = client.post(f"/tickets/{ticket['id']}/respond", headers=market.headers(market.artist),
                    json={"accept": True, "expected_version": ticket["version"]})
    assert r.status_code == 200, r.text
    assert r.json()["outcome"] == "accepted"

    r = client.get(f"/contracts/{contract.id}", headers=market.headers(market.client))
    assert r.json()["status"] == "cancelledClient"
    # W = 24,000 plus the 12,000 fee
    assert r.json()["finance"]["owed_to_artist"] == 36000
