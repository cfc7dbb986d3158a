import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from billing.services import BillingServices
from billing.store import InMemoryCreditStore
from config import BillingConfig
from helpers import ADMIN_TOKEN, ALERT_URL, CONEKTA_SECRET, MERCADOPAGO_SECRET, NOTIFY_URL, FakeProcessorAPI


@pytest.fixture
def cfg():
    cfg = BillingConfig()
    cfg.ENV = "development"
    cfg.CORS_ORIGINS = ["*"]
    cfg.CONEKTA_PRIVATE_KEY = "key_test_conekta"
    cfg.CONEKTA_WEBHOOK_SECRET = CONEKTA_SECRET
    cfg.CONEKTA_API_URL = "https://api.conekta.io"
    cfg.MERCADOPAGO_ACCESS_TOKEN = "TEST-mercadopago-token"
    cfg.MERCADOPAGO_WEBHOOK_SECRET = MERCADOPAGO_SECRET
    cfg.MERCADOPAGO_API_URL = "https://api.mercadopago.com"
    cfg.PROCESSOR_TIMEOUT_SECONDS = 5.0
    cfg.PUBLIC_BASE_URL = "https://billing.test"
    cfg.STORE_BACKEND = "memory"
    cfg.ALERT_WEBHOOK_URL = ALERT_URL
    cfg.NOTIFY_WEBHOOK_URL = NOTIFY_URL
    cfg.ADMIN_TOKEN = ADMIN_TOKEN
    return cfg


@pytest.fixture
def processor_api():
    return FakeProcessorAPI()


@pytest.fixture
def store():
    return InMemoryCreditStore({"A": 5, "B": 0})


@pytest.fixture
def services(cfg, store, processor_api):
    return BillingServices.from_config(cfg, store=store, transport=processor_api.transport)


@pytest.fixture
def client(cfg, services):
    with TestClient(create_app(cfg, services)) as client:
        yield client
