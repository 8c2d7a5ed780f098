import pytest
from fastapi.testclient import TestClient

import main
from otp_utils import OTPStore, StoreConfig

WINDOW_SECONDS = 300


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float):
        self.now += int(seconds * 1000)


class FakeEmailSender:
    def __init__(self):
        self.sent = []
        self.error = None

    def send(self, to, subject, body, is_html=False):
        if self.error is not None:
            raise self.error
        self.sent.append({"to": to, "subject": subject, "body": body, "is_html": is_html})
        return "<fake-message-id@test>"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store_dir(tmp_path):
    return tmp_path / "otp_storage"


@pytest.fixture
def store(store_dir, clock):
    return OTPStore(
        StoreConfig(storage_dir=str(store_dir), verification_window=WINDOW_SECONDS),
        clock=clock,
    )


@pytest.fixture
def mail_sender():
    return FakeEmailSender()


@pytest.fixture
def client(store, mail_sender):
    main.app.dependency_overrides[main.get_otp_store] = lambda: store
    main.app.dependency_overrides[main.get_email_sender] = lambda: mail_sender
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()
