"""
Общие фикстуры для тестов
"""
from datetime import datetime, timedelta, timezone

import pytest

from certrepo.clock import FrozenClock
from certrepo.database import CertificateRepository, DatabaseManager
from certrepo.models import ApprovalStep, CertificateRequest
from certrepo.notifications import NotificationTemplate
from certrepo.service import CertificateService
from config.settings import Settings

START = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class RecordingDispatcher:
    """Диспетчер, запоминающий отправленные уведомления"""

    def __init__(self):
        self.sent = []

    def notify(self, recipient, template: NotificationTemplate, payload):
        self.sent.append((recipient, template, payload))

    def templates(self):
        return [template for _, template, _ in self.sent]


class FailingDispatcher:
    """Диспетчер, который всегда падает"""

    def __init__(self):
        self.calls = 0

    def notify(self, recipient, template, payload):
        self.calls += 1
        raise ConnectionError("SMTP недоступен")


@pytest.fixture
def settings(tmp_path):
    """Настройки для тестов"""
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'certificates.db'}",
        artifacts_path=tmp_path / "artifacts",
        log_file=tmp_path / "logs" / "test.log",
        verification_base_url="https://certs.example.edu/verify",
        ca_users="ca-001",
        admin_users="admin-001",
    )


@pytest.fixture
def db_manager(settings):
    """Менеджер БД на временном файле SQLite"""
    manager = DatabaseManager(settings.database_url, echo=False, statement_timeout=30)
    manager.create_tables()
    yield manager
    manager.dispose()


@pytest.fixture
def repository(db_manager):
    return CertificateRepository(db_manager)


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def service(repository, settings, clock, dispatcher):
    """Полностью собранный сервис"""
    return CertificateService(repository=repository, settings=settings, clock=clock, dispatcher=dispatcher)


@pytest.fixture
def make_request():
    """Фабрика запросов на создание сертификата"""

    def factory(**overrides):
        data = {
            "issuer_id": "ca-001",
            "issuer_name": "Университет",
            "recipient_id": "student-042",
            "recipient_email": "a@x.edu",
            "recipient_name": "Иван Петров",
            "organization_id": "upm",
            "title": "Cert A",
        }
        data.update(overrides)
        return CertificateRequest(**data)

    return factory


@pytest.fixture
def two_step_request(make_request):
    """Запрос с цепочкой из двух шагов"""
    return make_request(
        requires_approval=True,
        approval_steps=[
            ApprovalStep(id="s1", step_name="Кафедра", order=0, approver_id="head-1"),
            ApprovalStep(id="s2", step_name="Деканат", order=1, approver_id="dean-1"),
        ],
    )


@pytest.fixture
def issued_certificate(service, make_request):
    """Выпущенный сертификат"""
    certificate = service.create_certificate(make_request())
    return service.issue_certificate(certificate.id, "ca-001")


@pytest.fixture
def week():
    return timedelta(days=7)


@pytest.fixture
def failing_dispatcher():
    return FailingDispatcher()
