import pytest
from fastapi.testclient import TestClient

from _helper import FixedClock
from fulfillment.main import app
from fulfillment.notifier import ChangeNotifier
from fulfillment.queue import InMemoryChannel
from fulfillment.service import OrderService
from fulfillment.stores import InMemoryAttachmentStore, InMemoryOrderStore, InMemoryStaffDirectory, StaffRef


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def channel() -> InMemoryChannel:
    return InMemoryChannel()


@pytest.fixture
def attachments() -> InMemoryAttachmentStore:
    return InMemoryAttachmentStore()


@pytest.fixture
def service(clock, channel, attachments) -> OrderService:
    staff = InMemoryStaffDirectory([
        StaffRef("u-1", "Minh", "sale"),
        StaffRef("u-2", "Hoa", "kitchen"),
    ])
    return OrderService(
        InMemoryOrderStore(),
        attachments,
        staff,
        ChangeNotifier(channel),
        clock=clock,
        require_assignee=True,
    )


@pytest.fixture
def client(service):
    app.state.service = service
    with TestClient(app) as c:
        yield c
    app.state.service = None
