import pytest

from kpm.errors import InsufficientFunds, InvalidTransition, NotFound, Unauthorized, ValidationFailed
from kpm.models.common import Actor
from kpm.services import notification_service
from kpm.services.workflow_rules import available_actions
from kpm.services.workflow_service import WorkflowService


class TestDaLifecycle:

    def test_pay_from_caisse(self, workflow, pending_da, make_caisse, daf, comptable, dispatcher):
        da = pending_da(unit_price=150000)
        assert da.status == "pending_validation"
        assert da.total_amount == 150000

        caisse = make_caisse(balance=200000)
        workflow.transition(da.id, "validate_finance", daf)
        paid = workflow.transition(da.id, "pay", comptable, {"caisse_id": caisse.id, "payment_details": {"mode": "especes"}})

        assert paid.status == "paid"
        assert paid.caisse_id == caisse.id
        assert paid.payment_details == {"mode": "especes"}
        assert workflow.caisses.get_balance(caisse.id) == 50000

        tx = workflow.caisses.get_transaction(paid.payment_transaction_id)
        assert (tx.type, tx.amount, tx.request_id) == ("payment", 150000, da.id)

        actions = [e.action for e in workflow.audit.list_for("da", da.id)]
        assert actions[-1] == "da.pay"
        assert dispatcher.sent[-1].type == "da.paid"
        assert "150 000 XOF" in dispatcher.sent[-1].message
        assert dispatcher.sent[-1].recipient_ids == [da.requester_id]

        with pytest.raises(InvalidTransition):
            workflow.transition(da.id, "pay", comptable, {"caisse_id": caisse.id})
        assert workflow.caisses.get_balance(caisse.id) == 50000

    def test_history_records_each_step(self, workflow, pending_da):
        da = pending_da()
        steps = [(h.action, h.from_status, h.to_status) for h in da.history]
        assert steps == [
            ("submit", "draft", "submitted"),
            ("take_analysis", "submitted", "under_review"),
            ("price", "under_review", "priced"),
            ("submit_validation", "priced", "pending_validation"),
        ]
        assert da.history[0].role == "responsable_logistique"

    def test_wrong_state_leaves_request_unchanged(self, workflow, pending_da, comptable):
        da = pending_da()
        with pytest.raises(InvalidTransition):
            workflow.transition(da.id, "pay", comptable)
        after = workflow.requests.get_by_id(da.id)
        assert after.status == "pending_validation"
        assert after.version == da.version

    def test_wrong_role_leaves_request_unchanged(self, workflow, pending_da, achats):
        da = pending_da()
        with pytest.raises(Unauthorized):
            workflow.transition(da.id, "validate_finance", achats)
        assert workflow.requests.get_by_id(da.id).status == "pending_validation"

    def test_state_checked_before_role(self, workflow, pending_da, employe):
        da = pending_da()
        with pytest.raises(InvalidTransition):
            workflow.transition(da.id, "pay", employe)

    def test_unknown_action(self, workflow, pending_da, admin):
        da = pending_da()
        with pytest.raises(InvalidTransition):
            workflow.transition(da.id, "archive", admin)

    def test_refusal_needs_reason(self, workflow, pending_da, daf):
        da = pending_da()
        with pytest.raises(ValidationFailed):
            workflow.transition(da.id, "refuse_finance", daf, {"reason": "non"})
        done = workflow.transition(da.id, "refuse_finance", daf, {"reason": "Budget épuisé"})
        assert done.status == "refused_finance"
        assert done.is_terminal()
        assert available_actions(done) == []

    def test_revision_loop(self, workflow, pending_da, daf, achats):
        da = pending_da(unit_price=1000)
        da = workflow.transition(da.id, "request_revision", daf, {"comment": "Revoir fournisseur"})
        assert da.status == "revision_purchasing"
        workflow.requests.price_line(da.id, da.lines[0].id, 900, achats)
        da = workflow.transition(da.id, "submit_validation", achats)
        assert da.status == "pending_validation"
        assert da.total_amount == 900

    def test_return_to_requester_and_resubmit(self, workflow, logistique, achats):
        da = workflow.requests.create_request("da", logistique, title="Câbles", lines=[{"designation": "Câble HDMI"}])
        workflow.transition(da.id, "submit", logistique)
        workflow.transition(da.id, "take_analysis", achats)
        da = workflow.transition(da.id, "return_to_requester", achats, {"reason": "Préciser la longueur"})
        assert da.status == "revision_requested"
        da = workflow.transition(da.id, "resubmit", logistique)
        assert da.status == "submitted"

    def test_submit_without_price_fails(self, workflow, logistique, achats):
        da = workflow.requests.create_request("da", logistique, lines=[{"designation": "Projecteur"}])
        workflow.transition(da.id, "submit", logistique)
        workflow.transition(da.id, "take_analysis", achats)
        with pytest.raises(ValidationFailed):
            workflow.transition(da.id, "price", achats)

    def test_type_mismatch_is_not_found(self, workflow, pending_da, daf):
        da = pending_da()
        with pytest.raises(NotFound):
            workflow.transition(da.id, "validate", daf, request_type="note_frais")


class TestPaymentAtomicity:

    def test_insufficient_funds_rolls_back(self, workflow, pending_da, make_caisse, daf, comptable):
        da = pending_da(unit_price=150000)
        caisse = make_caisse(balance=100000)
        workflow.transition(da.id, "validate_finance", daf)

        with pytest.raises(InsufficientFunds):
            workflow.transition(da.id, "pay", comptable, {"caisse_id": caisse.id})

        after = workflow.requests.get_by_id(da.id)
        assert after.status == "validated_finance"
        assert after.payment_transaction_id is None
        assert workflow.caisses.get_balance(caisse.id) == 100000
        assert workflow.caisses.list_transactions(caisse.id) == []

        failed = workflow.audit.list_for("caisse", caisse.id)[-1]
        assert failed.action == "caisse.payment.failed"
        assert failed.metadata["attempted"]["request_id"] == da.id

    def test_pay_without_caisse(self, workflow, pending_da, daf, comptable):
        da = pending_da()
        workflow.transition(da.id, "validate_finance", daf)
        paid = workflow.transition(da.id, "pay", comptable, {"payment_details": {"mode": "virement"}})
        assert paid.status == "paid"
        assert paid.caisse_id is None

    def test_idempotent_pay(self, workflow, pending_da, make_caisse, daf, comptable):
        da = pending_da(unit_price=1000)
        caisse = make_caisse(balance=5000)
        workflow.transition(da.id, "validate_finance", daf)
        first = workflow.transition(da.id, "pay", comptable, {"caisse_id": caisse.id}, idempotency_key="pay-1")
        again = workflow.transition(da.id, "pay", comptable, {"caisse_id": caisse.id}, idempotency_key="pay-1")
        assert again.version == first.version
        assert workflow.caisses.get_balance(caisse.id) == 4000
        assert len(workflow.caisses.list_transactions(caisse.id)) == 1

    def test_same_key_on_two_requests(self, workflow, pending_da, make_caisse, daf, comptable):
        da1 = pending_da(unit_price=1000)
        da2 = pending_da(unit_price=3000)
        caisse = make_caisse(balance=10000)
        for da in (da1, da2):
            workflow.transition(da.id, "validate_finance", daf)
        p1 = workflow.transition(da1.id, "pay", comptable, {"caisse_id": caisse.id}, idempotency_key="pay")
        p2 = workflow.transition(da2.id, "pay", comptable, {"caisse_id": caisse.id}, idempotency_key="pay")

        assert workflow.caisses.get_balance(caisse.id) == 6000
        assert p1.payment_transaction_id != p2.payment_transaction_id
        tx = workflow.caisses.get_transaction(p2.payment_transaction_id)
        assert (tx.request_id, tx.amount) == (da2.id, 3000)


class TestCorrection:

    def test_correct_payment_caisse(self, workflow, pending_da, make_caisse, daf, comptable):
        da = pending_da(unit_price=30000)
        wrong = make_caisse(code="CW", name="Caisse Agence", balance=50000)
        right = make_caisse(code="CR", name="Caisse Siège", balance=40000)
        workflow.transition(da.id, "validate_finance", daf)
        paid = workflow.transition(da.id, "pay", comptable, {"caisse_id": wrong.id})

        tx = workflow.caisses.correct_payment(da.id, right.id, "Erreur de caisse au paiement", comptable)

        assert tx.type == "correction"
        assert tx.correction_of_id == paid.payment_transaction_id
        assert workflow.caisses.get_balance(wrong.id) == 50000
        assert workflow.caisses.get_balance(right.id) == 10000

        fixed = workflow.requests.get_by_id(da.id)
        assert fixed.caisse_id == right.id
        assert fixed.payment_transaction_id == tx.id
        assert workflow.audit.list_for("da", da.id)[-1].action == "da.correct_caisse"

    def test_correction_needs_long_reason(self, workflow, pending_da, make_caisse, daf, comptable):
        da = pending_da(unit_price=100)
        a = make_caisse(code="A", name="A", balance=1000)
        b = make_caisse(code="B", name="B", balance=1000)
        workflow.transition(da.id, "validate_finance", daf)
        workflow.transition(da.id, "pay", comptable, {"caisse_id": a.id})
        with pytest.raises(ValidationFailed):
            workflow.caisses.correct_payment(da.id, b.id, "erreur", comptable)
        assert workflow.caisses.get_balance(a.id) == 900

    def test_correction_without_funds_changes_nothing(self, workflow, pending_da, make_caisse, daf, comptable):
        da = pending_da(unit_price=30000)
        wrong = make_caisse(code="CW", name="Caisse Agence", balance=50000)
        right = make_caisse(code="CR", name="Caisse Siège", balance=10000)
        workflow.transition(da.id, "validate_finance", daf)
        paid = workflow.transition(da.id, "pay", comptable, {"caisse_id": wrong.id})
        journal = workflow.caisses.list_transactions()

        with pytest.raises(InsufficientFunds):
            workflow.caisses.correct_payment(da.id, right.id, "Erreur de caisse au paiement", comptable)

        assert workflow.caisses.get_balance(wrong.id) == 20000
        assert workflow.caisses.get_balance(right.id) == 10000
        after = workflow.requests.get_by_id(da.id)
        assert (after.caisse_id, after.payment_transaction_id) == (wrong.id, paid.payment_transaction_id)
        assert workflow.caisses.list_transactions() == journal
        assert workflow.audit.list_for("caisse", right.id)[-1].action == "caisse.correction.failed"

    def test_unpaid_request_cannot_be_corrected(self, workflow, pending_da, make_caisse, comptable):
        da = pending_da()
        c = make_caisse(balance=1000)
        with pytest.raises(ValidationFailed):
            workflow.caisses.correct_payment(da.id, c.id, "Erreur de caisse au paiement", comptable)


class TestBesoin:

    def test_convert_to_da(self, workflow, employe, achats):
        besoin = workflow.requests.create_request(
            "besoin", employe, title="Micros HF", lines=[{"designation": "Micro HF", "quantity": 4}],
        )
        assert besoin.status == "created"
        assert besoin.reference.startswith("BES-")
        workflow.transition(besoin.id, "take_charge", achats)
        workflow.transition(besoin.id, "accept", achats)
        converted = workflow.transition(besoin.id, "convert", achats)

        assert converted.status == "converted"
        da = workflow.requests.get_by_id(converted.da_id)
        assert da.request_type == "da"
        assert da.status == "draft"
        assert da.besoin_id == besoin.id
        assert [(ln.designation, ln.quantity) for ln in da.lines] == [("Micro HF", 4)]

    def test_return_and_owner_resubmit(self, workflow, employe, achats):
        besoin = workflow.requests.create_request("besoin", employe, lines=[{"designation": "Casque"}])
        workflow.transition(besoin.id, "take_charge", achats)
        workflow.transition(besoin.id, "return", achats, {"reason": "Préciser le modèle"})
        other = Actor(id="u-other", roles={"employe"})
        with pytest.raises(Unauthorized):
            workflow.transition(besoin.id, "resubmit", other)
        again = workflow.transition(besoin.id, "resubmit", employe)
        assert again.status == "created"
        assert again.history[-1].role == "demandeur"


class TestNoteFrais:

    def test_owner_submit_then_pay(self, workflow, make_caisse, employe, daf, comptable):
        ndf = workflow.requests.create_request(
            "note_frais", employe, title="Déplacement Thiès",
            lines=[{"designation": "Taxi", "quantity": 2, "unit_price": 2500.5}],
        )
        assert ndf.total_amount == 5001
        caisse = make_caisse(balance=10000)

        workflow.transition(ndf.id, "submit", employe)
        with pytest.raises(Unauthorized):
            workflow.transition(ndf.id, "validate", comptable)
        workflow.transition(ndf.id, "validate", daf)
        paid = workflow.transition(ndf.id, "pay", comptable, {"caisse_id": caisse.id})

        assert paid.status == "paid"
        assert workflow.caisses.get_balance(caisse.id) == 4999

    def test_reject_needs_reason(self, workflow, employe, daf):
        ndf = workflow.requests.create_request(
            "note_frais", employe, lines=[{"designation": "Repas", "unit_price": 8000}],
        )
        workflow.transition(ndf.id, "submit", employe)
        with pytest.raises(ValidationFailed):
            workflow.transition(ndf.id, "reject", daf)
        assert workflow.transition(ndf.id, "reject", daf, {"reason": "Justificatif manquant"}).status == "rejected"


class TestNotifications:

    def test_failing_notifier_does_not_roll_back(self, store, logistique):
        class Broken:
            def dispatch(self, notification):
                raise ConnectionError("smtp down")

        wf = WorkflowService(store, notifier=Broken())
        da = wf.requests.create_request("da", logistique, lines=[{"designation": "Gaffer"}])
        done = wf.transition(da.id, "submit", logistique)
        assert done.status == "submitted"
        assert wf.requests.get_by_id(da.id).status == "submitted"

    def test_rendering_error_is_contained(self, workflow, logistique, dispatcher, monkeypatch):
        def broken(request, action):
            raise RuntimeError("gabarit invalide")

        monkeypatch.setattr(notification_service, "render_message", broken)
        da = workflow.requests.create_request("da", logistique, lines=[{"designation": "Gaffer"}])
        done = workflow.transition(da.id, "submit", logistique)
        assert done.status == "submitted"
        assert dispatcher.sent == []

    def test_routing(self, workflow, logistique, dispatcher):
        da = workflow.requests.create_request("da", logistique, lines=[{"designation": "Gaffer"}])
        workflow.transition(da.id, "submit", logistique)
        sent = dispatcher.sent[-1]
        assert sent.recipient_roles == ["agent_achats", "responsable_achats"]
        assert sent.reference == da.reference
        assert sent.message == f"{da.reference} (sans titre) : submit -> submitted"

    def test_message_carries_comment(self, workflow, logistique, achats, dispatcher):
        da = workflow.requests.create_request("da", logistique, lines=[{"designation": "Gaffer"}])
        workflow.transition(da.id, "submit", logistique)
        workflow.transition(da.id, "take_analysis", achats)
        workflow.transition(da.id, "return_to_requester", achats, {"reason": "Préciser la couleur"})
        assert dispatcher.sent[-1].message.endswith(": Préciser la couleur")


class TestRequestEditing:

    def test_add_line_after_validation_is_refused(self, workflow, pending_da, logistique):
        da = pending_da()
        with pytest.raises(InvalidTransition):
            workflow.requests.add_line(da.id, {"designation": "Extra"}, logistique)

    def test_price_requires_purchasing(self, workflow, logistique):
        da = workflow.requests.create_request("da", logistique, lines=[{"designation": "Gaffer"}])
        workflow.transition(da.id, "submit", logistique)
        with pytest.raises(Unauthorized):
            workflow.requests.price_line(da.id, da.lines[0].id, 100, logistique)

    def test_create_da_requires_logistics(self, workflow, employe):
        with pytest.raises(Unauthorized):
            workflow.requests.create_request("da", employe, lines=[{"designation": "x"}])

    def test_invalid_line(self, workflow, employe):
        with pytest.raises(ValidationFailed):
            workflow.requests.create_request("besoin", employe, lines=[{"designation": "x", "quantity": 0}])

    @pytest.mark.parametrize("price", [float("nan"), float("inf")])
    def test_non_finite_price_rejected(self, workflow, logistique, achats, price):
        da = workflow.requests.create_request("da", logistique, lines=[{"designation": "Gaffer"}])
        workflow.transition(da.id, "submit", logistique)
        with pytest.raises(ValidationFailed):
            workflow.requests.price_line(da.id, da.lines[0].id, price, achats)
        assert workflow.requests.get_by_id(da.id).priced_lines() == []

    @pytest.mark.parametrize("line", [
        {"designation": "Taxi", "quantity": float("inf"), "unit_price": 100},
        {"designation": "Taxi", "quantity": float("nan"), "unit_price": 100},
        {"designation": "Taxi", "unit_price": float("nan")},
    ])
    def test_non_finite_line_rejected(self, workflow, employe, line):
        with pytest.raises(ValidationFailed):
            workflow.requests.create_request("note_frais", employe, lines=[line])
