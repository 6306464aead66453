# tests/conftest.py
"""Pytest configuration and fixtures"""
import pytest
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from fieldops.bootstrap import build_service  # noqa: E402
from fieldops.config import Settings  # noqa: E402
from fieldops.core.domain import AdminUser, ChatEvent, EventKind, JobKind, Technician  # noqa: E402
from fieldops.core.errors import MessagingDeliveryError  # noqa: E402
from fieldops.infra.metrics import get_metrics_collector  # noqa: E402

ADMIN_TOKEN = "Xk9fP2qL7vR4tY8wZ3mN6bC1dH5jS0aE"

# 10:00 in Asia/Jakarta, before the default daily summary hour
FROZEN_NOW = datetime(2024, 1, 31, 3, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FROZEN_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


class RecordingGateway:
    """MessagingGateway double: records sends, fails for chats listed in ``failing``."""

    def __init__(self, failing=()):
        self.sent: list[tuple[str, str, list | None]] = []
        self.answered: list[str] = []
        self.failing = set(failing)

    async def send(self, chat_id, text, actions=None):
        if chat_id in self.failing:
            raise MessagingDeliveryError(chat_id, "Forbidden: bot was blocked by the user")
        self.sent.append((chat_id, text, actions))

    async def answer_callback(self, callback_id, text=None):
        self.answered.append(callback_id)

    def texts_for(self, chat_id: str) -> list[str]:
        return [text for cid, text, _ in self.sent if cid == chat_id]

    def recipients(self) -> set[str]:
        return {cid for cid, _, _ in self.sent}


@pytest.fixture(autouse=True)
def reset_metrics():
    """Metrics are process-global; every test starts from zero."""
    get_metrics_collector().reset()
    yield


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        app_env="dev",
        store_backend="memory",
        session_backend="memory",
        admin_token=ADMIN_TOKEN,
        telegram_bot_token=None,
        telegram_webhook_secret=None,
        scheduler_enabled=False,
        job_approval_required=False,
        job_lock_timeout_seconds=1.0,
        rate_limit_per_minute=1000,
        chat_rate_limit_per_minute=1000,
        timezone="Asia/Jakarta",
    )


@pytest.fixture
def service(test_settings, gateway, clock):
    """Fully wired in-memory dispatch service."""
    return build_service(test_settings, gateway=gateway, clock=clock)


@pytest.fixture
def make_technician(service):
    async def _make(tech_id, chat_id=None, *, name=None, phone=None, is_admin=False, is_active=True):
        suffix = "".join(ch for ch in tech_id if ch.isdigit()) or "1"
        return await service.technicians.upsert(Technician(
            id=tech_id,
            name=name or f"Tech {tech_id}",
            phone=phone or f"0812{int(suffix):07d}",
            chat_id=chat_id,
            is_active=is_active,
            is_admin=is_admin,
        ))
    return _make


@pytest.fixture
def make_admin(service):
    async def _make(admin_id, chat_id=None, *, username=None, password_hash=None, phone=None):
        return await service.admins.upsert(AdminUser(
            id=admin_id,
            username=username or admin_id,
            name=f"Admin {admin_id}",
            chat_id=chat_id,
            password_hash=password_hash,
            phone=phone,
        ))
    return _make


@pytest.fixture
def make_job(service):
    async def _make(kind=JobKind.INSTALLATION, address="Jl. Merdeka 1, Bandung", **kwargs):
        job, _ = await service.lifecycle.create_job(kind, address, **kwargs)
        return job
    return _make


def chat_event(kind: EventKind, chat_id: str, **kwargs) -> ChatEvent:
    return ChatEvent(kind=kind, chat_id=chat_id, sender_id=chat_id, **kwargs)


def command(chat_id: str, name: str, *args: str) -> ChatEvent:
    return chat_event(EventKind.COMMAND, chat_id, command=name, args=list(args), text=f"/{name}")


def callback(chat_id: str, data: str) -> ChatEvent:
    return chat_event(EventKind.CALLBACK, chat_id, callback_data=data, callback_id=f"cb-{data}")


def text(chat_id: str, body: str) -> ChatEvent:
    return chat_event(EventKind.TEXT, chat_id, text=body)
