# backend/tests/test_resolution.py
from datetime import timedelta

import pytest

from atelier.engine import contracts as contract_engine
from atelier.engine import resolution as engine
from atelier.engine import tickets as ticket_engine
from atelier.engine.errors import AuthorizationError, IllegalTransition, InvalidDecision, ValidationError
from atelier.engine.sweep import run_sweep

from conftest import milestone_snapshot

NOTE = "Both parties were heard; the delivery matches the brief and references."


def _final(market, contract, reject=True):
    upload = contract_engine.post_upload(
        market.db, market.artist, contract.id, "final", ["final.png"], None, market.now, market.policy
    )
    if reject:
        contract_engine.review_upload(market.db, market.client, contract.id, upload.id, False,
                                      market.now, market.policy)
    return upload


def _open(market, contract, target_type, target_id, actor=None):
    return engine.open_resolution(
        market.db, actor or market.artist, contract.id, target_type, target_id,
        "work was rejected without reason", ["final.png", "brief.png"], market.now, market.policy,
    )


def _counter(market, ticket, actor=None):
    return engine.submit_counter(
        market.db, actor or market.client, ticket.id, "colours are off", ["ref.png"], market.now
    )


def _resolve(market, ticket, decision, note=NOTE):
    return engine.resolve(market.db, market.admin, ticket.id, decision, note, market.now, market.policy)


# -----------------------------
# Decision guards
# -----------------------------
def test_open_resolution_cannot_be_resolved(market):
    contract = market.contract()
    upload = _final(market, contract)
    ticket = _open(market, contract, "finalUpload", upload.id)
    with pytest.raises(IllegalTransition) as exc:
        _resolve(market, ticket, "favorArtist")
    assert exc.value.current == "open"


def test_resolution_note_length(market):
    contract = market.contract()
    upload = _final(market, contract)
    ticket = _counter(market, _open(market, contract, "finalUpload", upload.id))

    with pytest.raises(ValidationError) as exc:
        _resolve(market, ticket, "favorClient", note="n" * 49)
    assert exc.value.field == "resolution_note"
    assert ticket.status == "awaitingReview"

    _resolve(market, ticket, "favorClient", note="n" * 50)
    assert ticket.status == "resolved"
    assert ticket.decision == "favorClient"


def test_unknown_decision(market):
    contract = market.contract()
    upload = _final(market, contract)
    ticket = _counter(market, _open(market, contract, "finalUpload", upload.id))
    with pytest.raises(InvalidDecision):
        _resolve(market, ticket, "favorBoth")


def test_only_admin_resolves(market):
    contract = market.contract()
    upload = _final(market, contract)
    ticket = _counter(market, _open(market, contract, "finalUpload", upload.id))
    with pytest.raises(AuthorizationError):
        engine.resolve(market.db, market.client, ticket.id, "favorClient", NOTE, market.now, market.policy)
    with pytest.raises(AuthorizationError):
        engine.pending_for_admin(market.db, market.artist)
    assert [t.id for t in engine.pending_for_admin(market.db, market.admin, "awaitingReview")] == [ticket.id]


def test_opening_requires_description_and_evidence(market):
    contract = market.contract()
    upload = _final(market, contract)
    with pytest.raises(ValidationError):
        engine.open_resolution(market.db, market.artist, contract.id, "finalUpload", upload.id,
                               "too short", ["a.png"], market.now, market.policy)
    with pytest.raises(ValidationError):
        engine.open_resolution(market.db, market.artist, contract.id, "finalUpload", upload.id,
                               "rejected without reason", [], market.now, market.policy)


# -----------------------------
# Upload disputes
# -----------------------------
def test_final_upload_favor_artist_completes_contract(market):
    contract = market.contract()
    upload = _final(market, contract)
    ticket = _counter(market, _open(market, contract, "finalUpload", upload.id))
    _resolve(market, ticket, "favorArtist")

    assert upload.status == "forcedAccepted"
    assert contract.status == "completed"
    assert contract.owed_to_artist == 120000


def test_final_upload_favor_artist_after_deadline_is_late(market):
    contract = market.contract()
    market.clock.advance(days=13)
    upload = _final(market, contract)
    ticket = _counter(market, _open(market, contract, "finalUpload", upload.id))
    market.clock.advance(days=2)
    _resolve(market, ticket, "favorArtist")
    assert contract.status == "completedLate"


def test_final_upload_favor_client_keeps_rejection(market):
    contract = market.contract()
    upload = _final(market, contract)
    ticket = _counter(market, _open(market, contract, "finalUpload", upload.id))
    _resolve(market, ticket, "favorClient")
    assert upload.status == "rejected"
    assert contract.status == "active"


def test_milestone_upload_forced_accept_advances(market):
    contract = market.contract(snapshot=milestone_snapshot())
    upload = contract_engine.post_upload(market.db, market.artist, contract.id, "milestone", ["sketch.png"],
                                         None, market.now, market.policy)
    contract_engine.review_upload(market.db, market.client, contract.id, upload.id, False,
                                  market.now, market.policy)
    ticket = _counter(market, _open(market, contract, "progressMilestoneUpload", upload.id))
    _resolve(market, ticket, "favorArtist")

    assert [m.status for m in contract.milestones] == ["accepted", "inProgress", "pending"]
    assert contract.work_percentage == 30


def test_disputed_upload_is_frozen(market):
    contract = market.contract()
    upload = _final(market, contract, reject=False)
    ticket = _open(market, contract, "finalUpload", upload.id, actor=market.client)

    with pytest.raises(IllegalTransition):
        contract_engine.review_upload(market.db, market.client, contract.id, upload.id, True,
                                      market.now, market.policy)

    market.clock.advance(hours=25)
    report = run_sweep(market.db, market.now, market.policy)
    assert report.tickets_lapsed == 1
    assert report.uploads_auto_accepted == 0
    market.db.refresh(ticket)
    assert ticket.status == "awaitingReview"
    assert ticket.counter_evidence == []


def test_pending_resolution_blocks_new_tickets(market):
    contract = market.contract()
    upload = _final(market, contract)
    _open(market, contract, "finalUpload", upload.id)
    with pytest.raises(IllegalTransition):
        ticket_engine.open_cancel(market.db, market.client, contract.id, "leaving", [], None,
                                  market.now, market.policy)
    with pytest.raises(IllegalTransition):
        _open(market, contract, "finalUpload", upload.id)


# -----------------------------
# Ticket escalation
# -----------------------------
def _rejected_cancel(market, contract):
    ticket = ticket_engine.open_cancel(market.db, market.client, contract.id, "artist went silent",
                                       ["chat.png"], 40, market.now, market.policy)
    ticket_engine.respond(market.db, market.artist, ticket.id, False, "still working", ["wip.png"], None,
                          market.now, market.policy)
    return ticket


def test_escalated_cancel_favor_client(market):
    contract = market.contract()
    cancel = _rejected_cancel(market, contract)
    with pytest.raises(ValidationError):
        _open(market, contract, "cancelTicket", cancel.id + 100, actor=market.client)
    ticket = _counter(
        market, _open(market, contract, "cancelTicket", cancel.id, actor=market.client), actor=market.artist
    )
    assert cancel.escalated_to_id == ticket.id

    _resolve(market, ticket, "favorClient")
    assert cancel.status == "resolved"
    assert cancel.outcome == "forcedAccepted"
    assert contract.status == "cancelledClient"
    # W = 48,000 plus the 12,000 fee
    assert contract.owed_to_artist == 60000


def test_escalated_cancel_favor_artist(market):
    contract = market.contract()
    cancel = _rejected_cancel(market, contract)
    ticket = _counter(
        market, _open(market, contract, "cancelTicket", cancel.id, actor=market.client), actor=market.artist
    )
    _resolve(market, ticket, "favorArtist")
    assert cancel.outcome == "denied"
    assert contract.status == "active"


def test_open_ticket_cannot_be_escalated(market):
    contract = market.contract()
    cancel = ticket_engine.open_cancel(market.db, market.client, contract.id, "leaving", [], None,
                                       market.now, market.policy)
    with pytest.raises(IllegalTransition):
        _open(market, contract, "cancelTicket", cancel.id, actor=market.client)


def test_escalated_change_freezes_fee_decision(market):
    contract = market.contract()
    change = ticket_engine.ChangeRequest.model_validate(
        {"aspects": [{"aspect": "description", "description": "Knight with a dragon"}]}
    )
    ticket = ticket_engine.open_change(market.db, market.client, contract.id, change, None, [],
                                       market.now, market.policy)
    ticket_engine.respond(market.db, market.artist, ticket.id, True, None, [], 20000, market.now, market.policy)

    resolution = _open(market, contract, "changeTicket", ticket.id)
    with pytest.raises(IllegalTransition) as exc:
        ticket_engine.confirm_fee(market.db, market.client, ticket.id, True, market.now, market.policy)
    assert exc.value.current == "escalated"
    with pytest.raises(IllegalTransition):
        ticket_engine.withdraw(market.db, market.client, ticket.id, market.now)

    _resolve(market, _counter(market, resolution), "favorArtist")
    assert ticket.outcome == "feeApplied"
    assert contract.runtime_fees == 20000
    assert contract.latest_terms.version_no == 2


def _escalate(market, contract, target_type, target_id):
    return _counter(
        market, _open(market, contract, target_type, target_id, actor=market.client), actor=market.artist
    )


def _rejected_revision(market, contract):
    ticket = ticket_engine.open_revision(market.db, market.client, contract.id, "hair colour should be red",
                                         [], None, market.now, market.policy)
    ticket_engine.respond(market.db, market.artist, ticket.id, False, "matches the brief", ["brief.png"], None,
                          market.now, market.policy)
    return ticket


def test_escalated_revision_favor_client_charges_fee(market):
    contract = market.contract()
    free = ticket_engine.open_revision(market.db, market.client, contract.id, "softer lighting", [], None,
                                       market.now, market.policy)
    ticket_engine.respond(market.db, market.artist, free.id, True, None, [], None, market.now, market.policy)
    paid = _rejected_revision(market, contract)
    assert paid.fee == 10000

    _resolve(market, _escalate(market, contract, "revisionTicket", paid.id), "favorClient")
    assert paid.status == "resolved"
    assert paid.outcome == "forcedAccepted"
    assert paid.runtime_fee == 10000
    assert contract.revisions_used == 2
    assert contract.runtime_fees == 10000
    assert contract.total == 130000
    assert contract.status == "active"


def test_escalated_revision_favor_artist_releases_slot(market):
    contract = market.contract()
    ticket = _rejected_revision(market, contract)
    assert contract.revisions_used == 1

    _resolve(market, _escalate(market, contract, "revisionTicket", ticket.id), "favorArtist")
    assert ticket.status == "resolved"
    assert ticket.outcome == "denied"
    assert contract.revisions_used == 0
    assert contract.runtime_fees == 0
    with pytest.raises(IllegalTransition):
        contract_engine.post_upload(market.db, market.artist, contract.id, "revision", ["v2.png"], None,
                                    market.now, market.policy, revision_ticket_id=ticket.id)


def test_escalated_change_favor_client_waives_delta(market):
    contract = market.contract()
    change = ticket_engine.ChangeRequest.model_validate({"aspects": [{
        "aspect": "generalOptions",
        "items": [{"kind": "addon", "addon_id": "bg"}, {"kind": "addon", "addon_id": "commercial"}],
    }]})
    ticket = ticket_engine.open_change(market.db, market.client, contract.id, change, None, [],
                                       market.now, market.policy)
    assert ticket.price_delta == 50000
    ticket_engine.respond(market.db, market.artist, ticket.id, False, "out of scope", [], None,
                          market.now, market.policy)

    _resolve(market, _escalate(market, contract, "changeTicket", ticket.id), "favorClient")
    assert ticket.outcome == "forcedAccepted"
    assert ticket.runtime_fee == 0
    assert ticket.applied_terms_version == 2
    assert contract.latest_terms.version_no == 2
    assert len(contract.latest_terms.selection["general"]) == 2
    assert contract.runtime_fees == 0
    assert contract.total == 120000


# -----------------------------
# Milestone and revision uploads
# -----------------------------
def test_milestone_upload_favor_client_rejects_milestone(market):
    contract = market.contract(snapshot=milestone_snapshot())
    upload = contract_engine.post_upload(market.db, market.artist, contract.id, "milestone", ["sketch.png"],
                                         None, market.now, market.policy)
    ticket = _escalate(market, contract, "progressMilestoneUpload", upload.id)
    _resolve(market, ticket, "favorClient")

    assert upload.status == "rejected"
    assert contract.milestones[0].status == "rejected"
    assert contract.work_percentage == 0
    assert contract.status == "active"

    again = contract_engine.post_upload(market.db, market.artist, contract.id, "milestone", ["sketch-2.png"],
                                        None, market.now, market.policy)
    assert again.milestone_idx == 0
    assert contract.milestones[0].status == "inProgress"


def _rejected_revision_upload(market, contract):
    ticket = ticket_engine.open_revision(market.db, market.client, contract.id, "hair colour should be red",
                                         [], None, market.now, market.policy)
    ticket_engine.respond(market.db, market.artist, ticket.id, True, None, [], None, market.now, market.policy)
    upload = contract_engine.post_upload(market.db, market.artist, contract.id, "revision", ["v2.png"], None,
                                         market.now, market.policy, revision_ticket_id=ticket.id)
    contract_engine.review_upload(market.db, market.client, contract.id, upload.id, False,
                                  market.now, market.policy)
    return ticket, upload


def test_revision_upload_favor_client_leaves_revision_owed(market):
    contract = market.contract()
    ticket, upload = _rejected_revision_upload(market, contract)
    _resolve(market, _counter(market, _open(market, contract, "revisionUpload", upload.id)), "favorClient")

    assert upload.status == "rejected"
    assert ticket.fulfilled_at is None
    assert contract.status == "active"
    redo = contract_engine.post_upload(market.db, market.artist, contract.id, "revision", ["v3.png"], None,
                                       market.now, market.policy, revision_ticket_id=ticket.id)
    assert redo.status == "submitted"


def test_revision_upload_favor_artist_fulfils_revision(market):
    contract = market.contract()
    ticket, upload = _rejected_revision_upload(market, contract)
    market.clock.advance(hours=2)
    _resolve(market, _counter(market, _open(market, contract, "revisionUpload", upload.id)), "favorArtist")

    assert upload.status == "forcedAccepted"
    assert ticket.fulfilled_at == market.now
    assert contract.status == "active"
    with pytest.raises(IllegalTransition):
        contract_engine.post_upload(market.db, market.artist, contract.id, "revision", ["v3.png"], None,
                                    market.now, market.policy, revision_ticket_id=ticket.id)


# -----------------------------
# Disputes past the grace period
# -----------------------------
def test_pending_dispute_holds_grace_expiry(market):
    contract = market.contract()
    upload = _final(market, contract)
    ticket = _counter(market, _open(market, contract, "finalUpload", upload.id))
    market.clock.now = contract.grace_ends_at + timedelta(seconds=1)

    report = run_sweep(market.db, market.now, market.policy)
    assert report.contracts_not_completed == 0
    assert report.contracts_held == 1
    market.db.refresh(contract)
    assert contract.status == "active"

    _resolve(market, ticket, "favorArtist")
    assert upload.status == "forcedAccepted"
    assert contract.status == "completedLate"
    assert contract.owed_to_artist == 108000


def test_dispute_lost_after_grace_ends_contract_next_sweep(market):
    contract = market.contract()
    upload = _final(market, contract)
    ticket = _counter(market, _open(market, contract, "finalUpload", upload.id))
    market.clock.now = contract.grace_ends_at + timedelta(hours=1)
    assert run_sweep(market.db, market.now, market.policy).contracts_held == 1

    _resolve(market, ticket, "favorClient")
    assert contract.status == "active"
    report = run_sweep(market.db, market.now, market.policy)
    assert report.contracts_not_completed == 1
    market.db.refresh(contract)
    assert contract.status == "notCompleted"


def test_cancelled_resolution_releases_ticket(market):
    contract = market.contract()
    cancel = _rejected_cancel(market, contract)
    resolution = _open(market, contract, "cancelTicket", cancel.id, actor=market.client)
    with pytest.raises(AuthorizationError):
        engine.cancel_resolution(market.db, market.artist, resolution.id, market.now)

    engine.cancel_resolution(market.db, market.client, resolution.id, market.now)
    assert resolution.status == "cancelled"
    assert cancel.escalated_to_id is None
    ticket_engine.withdraw(market.db, market.client, cancel.id, market.now)
    assert cancel.status == "cancelled"


# -----------------------------
# HTTP surface
# -----------------------------
def test_resolution_endpoints(client, market):
    contract = market.contract()
    upload = _final(market, contract)

    r = client.post(f"/contracts/{contract.id}/resolution", headers=market.headers(market.artist), json={
        "target_type": "finalUpload",
        "target_id": upload.id,
        "description": "finished piece rejected without feedback",
        "evidence": ["final.png"],
    })
    assert r.status_code == 201, r.text
    ticket = r.json()

    r = client.post(f"/resolution/{ticket['id']}/counterproof", headers=market.headers(market.client),
                    json={"description": "hands are wrong", "evidence": ["ref.png"]})
    assert r.json()["status"] == "awaitingReview"

    r = client.get("/admin/resolution?status=awaitingReview", headers=market.headers(market.admin))
    assert [t["id"] for t in r.json()] == [ticket["id"]]

    r = client.post(f"/resolution/{ticket['id']}/resolve", headers=market.headers(market.admin),
                    json={"decision": "favorArtist", "resolution_note": "too short"})
    assert r.status_code == 422
    assert r.json()["error"] == "ValidationError"

    r = client.post(f"/resolution/{ticket['id']}/resolve", headers=market.headers(market.admin),
                    json={"decision": "split", "resolution_note": NOTE})
    assert r.status_code == 422
    assert r.json()["error"] == "InvalidDecision"

    market.clock.advance(hours=1)
    r = client.post(f"/resolution/{ticket['id']}/resolve", headers=market.headers(market.admin),
                    json={"decision": "favorArtist", "resolution_note": NOTE})
    assert r.status_code == 200, r.text
    assert r.json()["resolved_by"] == market.admin.id

    r = client.get(f"/contracts/{contract.id}", headers=market.headers(market.artist))
    assert r.json()["status"] == "completed"
    assert r.json()["uploads"][0]["status"] == "forcedAccepted"
