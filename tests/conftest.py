import pytest

from kpm.api import Core
from kpm.config import load_settings
from kpm.models.common import Actor
from kpm.services.workflow_service import WorkflowService
from kpm.storage.store import Store


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    def dispatch(self, notification):
        self.sent.append(notification)


@pytest.fixture
def settings(tmp_path):
    return load_settings(tmp_path, backup_enabled=False)


@pytest.fixture
def store(tmp_path, settings):
    return Store(tmp_path, settings=settings)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def workflow(store, dispatcher):
    return WorkflowService(store, notifier=dispatcher)


@pytest.fixture
def core(tmp_path, settings, dispatcher):
    with Core(tmp_path, settings=settings, notifier=dispatcher) as c:
        yield c


# ---------- Acteurs ---------- #

@pytest.fixture
def logistique():
    return Actor(id="u-log", roles={"responsable_logistique"}, name="Awa Logistique")


@pytest.fixture
def achats():
    return Actor(id="u-ach", roles={"agent_achats"})


@pytest.fixture
def daf():
    return Actor(id="u-daf", roles={"daf"}, email="daf@kpm.sn")


@pytest.fixture
def comptable():
    return Actor(id="u-cpt", roles={"comptable"})


@pytest.fixture
def admin():
    return Actor(id="u-adm", roles={"admin"})


@pytest.fixture
def employe():
    return Actor(id="u-emp", roles={"employe"}, department="Technique")


# ---------- Données ---------- #

@pytest.fixture
def make_caisse(workflow, admin):
    def _make(code="CS01", name="Caisse Siège", balance=0, currency=None):
        return workflow.caisses.create_caisse(
            code=code, name=name, actor=admin, initial_balance=balance, currency=currency,
        )
    return _make


@pytest.fixture
def pending_da(workflow, logistique, achats):
    """Fabrique une DA chiffrée et soumise à validation."""
    def _make(unit_price=150000, quantity=1):
        da = workflow.requests.create_request(
            "da", logistique, title="Fournitures bureau",
            lines=[{"designation": "Ramettes papier", "quantity": quantity, "unit": "carton"}],
        )
        workflow.transition(da.id, "submit", logistique)
        workflow.transition(da.id, "take_analysis", achats)
        workflow.requests.price_line(da.id, da.lines[0].id, unit_price, achats, supplier="SOCOPAO")
        workflow.transition(da.id, "price", achats)
        return workflow.transition(da.id, "submit_validation", achats)
    return _make
