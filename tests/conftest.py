import pytest

from market_chat.services.chat_service import ConversationService
from tests.fakes.fake_bus import FlakyBus
from tests.fakes.fake_store import FakeStore

PROFILES = {
    "u1": {"display_name": "Ada Vendor", "email": "ada@shop.ng", "role": "vendor"},
    "u2": {"display_name": "Bola Customer", "email": "bola@mail.ng", "role": "customer"},
    "u3": {"display_name": "Chidi Manager", "email": "chidi@market.ng", "role": "manager"},
}


@pytest.fixture
def store():
    return FakeStore(profiles={k: dict(v) for k, v in PROFILES.items()})


@pytest.fixture
def bus():
    return FlakyBus()


@pytest.fixture
async def service(store, bus):
    svc = ConversationService(store.conversations, store.participants, store.messages, store.receipts, store.users, bus)
    yield svc
    await svc.shutdown()


@pytest.fixture
async def conversation(service):
    return await service.create_conversation("u1", "Order Q&A", "direct", ["u2"])
