"""
Тесты жизненного цикла сертификата
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from pathlib import Path

import pytest

from certrepo.exceptions import (
    CertificateNotFoundError, InvalidStateError, PermissionDeniedError, RenderingError, ValidationError
)
from certrepo.models import ApprovalStep, CertificateStatus, TransactionAction
from certrepo.notifications import NotificationTemplate
from certrepo.service import CertificateService
from certrepo.storage import JsonArtifactRenderer


class BrokenRenderer:
    extension = "pdf"

    def render(self, certificate):
        raise RenderingError("Шаблон не найден")


class MissingFontRenderer:
    extension = "pdf"

    def render(self, certificate):
        raise OSError("font missing")


class BarrierRenderer(JsonArtifactRenderer):
    """Рендерер, который ждет, пока все параллельные выпуски прочитают сертификат"""

    def __init__(self, parties):
        self.barrier = threading.Barrier(parties, timeout=10)

    def render(self, certificate):
        self.barrier.wait()
        return super().render(certificate)


class TestCreateCertificate:
    """Тесты создания сертификата"""

    def test_create_without_approval_is_draft(self, service, make_request):
        """Без согласования сертификат создается черновиком"""
        certificate = service.create_certificate(make_request())

        assert certificate.status == CertificateStatus.DRAFT
        assert certificate.current_approval_step is None
        assert certificate.approval_steps == []
        assert certificate.is_verified is False

    def test_create_generates_identifiers(self, service, make_request, settings):
        """Генерируются ID, код проверки, печать и QR-код"""
        certificate = service.create_certificate(make_request())

        assert len(certificate.verification_code) == 8
        assert len(certificate.verification_id) == 16
        assert len(certificate.hash) == 64
        assert certificate.qr_code == (
            f"{settings.verification_base_url}/{certificate.id}?v={certificate.verification_id}"
        )
        assert certificate.metadata.created_by == "ca-001"
        assert certificate.metadata.verification_url == certificate.qr_code

    def test_create_persists_certificate(self, service, make_request):
        """Созданный сертификат читается из БД"""
        certificate = service.create_certificate(make_request(tags=["ml"], metadata={"room": "101"}))
        stored = service.get_certificate(certificate.id)

        assert stored.title == "Cert A"
        assert stored.tags == ["ml"]
        assert stored.metadata.extra == {"room": "101"}
        assert stored.issued_at == certificate.issued_at

    def test_create_with_steps_is_pending(self, service, two_step_request):
        """С цепочкой согласования сертификат ожидает первый шаг"""
        certificate = service.create_certificate(two_step_request)

        assert certificate.status == CertificateStatus.PENDING
        assert certificate.current_approval_step == "s1"
        assert [step.position for step in certificate.approval_steps] == [0, 1]

    def test_create_picks_lowest_order_step(self, service, make_request):
        """Текущий шаг выбирается по order, а не по позиции в списке"""
        certificate = service.create_certificate(make_request(
            requires_approval=True,
            approval_steps=[
                ApprovalStep(id="late", order=5),
                ApprovalStep(id="early", order=1),
            ],
        ))

        assert certificate.current_approval_step == "early"

    def test_steps_ignored_without_approval_flag(self, service, make_request):
        """Шаги без флага согласования игнорируются"""
        certificate = service.create_certificate(make_request(
            requires_approval=False,
            approval_steps=[ApprovalStep(id="s1", order=0)],
        ))

        assert certificate.status == CertificateStatus.DRAFT
        assert certificate.approval_steps == []

    def test_requires_approval_without_steps_is_draft(self, service, make_request):
        certificate = service.create_certificate(make_request(requires_approval=True))
        assert certificate.status == CertificateStatus.DRAFT

    def test_empty_title_rejected(self, make_request):
        """Пустое название отклоняется"""
        with pytest.raises(ValidationError):
            make_request(title="   ")

    def test_malformed_email_rejected(self, make_request):
        """Некорректный email отклоняется"""
        with pytest.raises(ValidationError):
            make_request(recipient_email="not-an-email")

    def test_expiry_before_issue_rejected(self, service, make_request, clock):
        """Дата окончания должна быть позже даты выпуска"""
        with pytest.raises(ValidationError):
            service.create_certificate(make_request(expires_at=clock.now() - timedelta(days=1)))

    def test_create_writes_audit_record(self, service, make_request):
        certificate = service.create_certificate(make_request())
        history = service.get_certificate_history(certificate.id)

        assert [record.action for record in history] == [TransactionAction.CREATED]
        assert history[0].performed_by == "ca-001"

    def test_create_enqueues_recipient_notification(self, service, make_request):
        """Получатель получает уведомление в той же транзакции"""
        certificate = service.create_certificate(make_request())
        notifications = service.get_notifications("student-042")

        assert len(notifications) == 1
        assert notifications[0]["type"] == NotificationTemplate.CERTIFICATE_CREATED.value
        assert notifications[0]["certificate_id"] == certificate.id

    def test_no_notification_when_recipient_is_issuer(self, service, make_request):
        service.create_certificate(make_request(recipient_id="ca-001"))
        assert service.get_notifications("ca-001") == []

    def test_default_issuer_name(self, service, make_request, settings):
        certificate = service.create_certificate(make_request(issuer_name=None))
        assert certificate.issuer_name == settings.default_issuer_name


class TestIssueCertificate:
    """Тесты выпуска сертификата"""

    def test_issue_draft(self, service, make_request, clock, dispatcher):
        """Сценарий: черновик выпускается"""
        certificate = service.create_certificate(make_request(title="Cert A", recipient_email="a@x.edu"))
        clock.advance(hours=2)

        issued = service.issue_certificate(certificate.id, "ca-001")

        assert issued.status == CertificateStatus.ISSUED
        assert issued.is_verified is True
        assert issued.issued_at == clock.now()
        assert NotificationTemplate.CERTIFICATE_ISSUED in dispatcher.templates()

    def test_issue_renders_artifact(self, service, make_request):
        """При выпуске формируется файл сертификата"""
        certificate = service.create_certificate(make_request())
        issued = service.issue_certificate(certificate.id, "admin-001")

        assert issued.has_artifact
        assert Path(issued.artifact_path).exists()
        assert issued.metadata.artifact_storage_path == issued.artifact_path
        assert b"Cert A" in service.get_certificate_artifact(certificate.id)

        actions = [record.action for record in service.get_certificate_history(certificate.id)]
        assert TransactionAction.ARTIFACT_RENDERED in actions
        assert TransactionAction.ISSUED in actions

    def test_issue_requires_ca_or_admin(self, service, make_request):
        certificate = service.create_certificate(make_request())

        with pytest.raises(PermissionDeniedError):
            service.issue_certificate(certificate.id, "student-042")

        assert service.get_certificate(certificate.id).status == CertificateStatus.DRAFT

    def test_issue_pending_rejected(self, service, two_step_request):
        """Сертификат на согласовании выпустить нельзя"""
        certificate = service.create_certificate(two_step_request)

        with pytest.raises(InvalidStateError):
            service.issue_certificate(certificate.id, "ca-001")

    def test_issue_twice_rejected(self, service, issued_certificate):
        with pytest.raises(InvalidStateError):
            service.issue_certificate(issued_certificate.id, "ca-001")

    def test_issue_unknown_certificate(self, service):
        with pytest.raises(CertificateNotFoundError):
            service.issue_certificate("missing", "ca-001")

    def test_rendering_failure_is_fatal(self, repository, settings, clock, dispatcher, make_request):
        """Ошибка формирования файла прерывает выпуск"""
        service = CertificateService(repository=repository, settings=settings, clock=clock,
                                     dispatcher=dispatcher, renderer=BrokenRenderer())
        certificate = service.create_certificate(make_request())

        with pytest.raises(RenderingError):
            service.issue_certificate(certificate.id, "ca-001")

        assert service.get_certificate(certificate.id).status == CertificateStatus.DRAFT
        assert service.artifact_storage.get_storage_stats()["total_files"] == 0

    def test_dispatch_failure_does_not_fail_issue(self, repository, settings, clock, make_request,
                                                   failing_dispatcher):
        """Ошибка отправки уведомления не откатывает выпуск"""
        failing = failing_dispatcher
        service = CertificateService(repository=repository, settings=settings, clock=clock, dispatcher=failing)
        certificate = service.create_certificate(make_request())

        issued = service.issue_certificate(certificate.id, "ca-001")

        assert issued.status == CertificateStatus.ISSUED
        assert failing.calls == 1
        assert service.notifications.metrics.failed == 1

    def test_issue_expired_certificate_rejected(self, service, make_request, clock):
        certificate = service.create_certificate(make_request(expires_at=clock.now() + timedelta(days=1)))
        clock.advance(days=2)

        with pytest.raises(InvalidStateError):
            service.issue_certificate(certificate.id, "ca-001")

    def test_issue_at_expiry_instant_rejected(self, service, make_request, clock):
        """В момент окончания срока выпуск уже невозможен"""
        certificate = service.create_certificate(make_request(expires_at=clock.now() + timedelta(days=1)))
        clock.advance(days=1)

        with pytest.raises(InvalidStateError):
            service.issue_certificate(certificate.id, "ca-001")

        assert service.get_certificate(certificate.id).status == CertificateStatus.DRAFT

    def test_renderer_exception_becomes_rendering_error(self, repository, settings, clock, dispatcher,
                                                        make_request):
        """Любой сбой рендерера сообщается как RenderingError"""
        service = CertificateService(repository=repository, settings=settings, clock=clock,
                                     dispatcher=dispatcher, renderer=MissingFontRenderer())
        certificate = service.create_certificate(make_request())

        with pytest.raises(RenderingError) as exc_info:
            service.issue_certificate(certificate.id, "ca-001")

        assert isinstance(exc_info.value.__cause__, OSError)
        assert service.get_certificate(certificate.id).status == CertificateStatus.DRAFT


class TestRevokeCertificate:
    """Тесты отзыва сертификата"""

    def test_revoke_then_issue_fails(self, service, make_request):
        """Сценарий: отзыв окончателен"""
        certificate = service.create_certificate(make_request())

        revoked = service.revoke_certificate(certificate.id, "admin", "policy violation")

        assert revoked.status == CertificateStatus.REVOKED
        assert revoked.is_revoked is True
        assert revoked.revocation_reason == "policy violation"

        with pytest.raises(InvalidStateError):
            service.issue_certificate(certificate.id, "ca-001")

    def test_revoke_issued(self, service, issued_certificate, dispatcher):
        revoked = service.revoke_certificate(issued_certificate.id, "ca-001", "ошибка в данных")

        assert revoked.status == CertificateStatus.REVOKED
        assert NotificationTemplate.CERTIFICATE_REVOKED in dispatcher.templates()

    def test_revoke_twice_rejected(self, service, issued_certificate):
        service.revoke_certificate(issued_certificate.id, "ca-001", "причина")

        with pytest.raises(InvalidStateError):
            service.revoke_certificate(issued_certificate.id, "ca-001", "еще раз")

    def test_approve_revoked_rejected(self, service, two_step_request):
        certificate = service.create_certificate(two_step_request)
        service.revoke_certificate(certificate.id, "admin", "policy violation")

        with pytest.raises(InvalidStateError):
            service.approve_certificate(certificate.id, "head-1", "s1", "ok")

    def test_revoke_records_previous_status(self, service, issued_certificate):
        service.revoke_certificate(issued_certificate.id, "ca-001", "причина")
        record = service.get_certificate_history(issued_certificate.id)[0]

        assert record.action == TransactionAction.REVOKED
        assert record.details["previous_status"] == "issued"


class TestDeleteCertificate:
    """Тесты удаления сертификата"""

    def test_delete_removes_record_and_artifact(self, service, issued_certificate):
        artifact_path = Path(issued_certificate.artifact_path)

        assert service.delete_certificate(issued_certificate.id, "admin-001") is True

        assert not artifact_path.exists()
        with pytest.raises(CertificateNotFoundError):
            service.get_certificate(issued_certificate.id)

        # Журнал сохраняется
        actions = [record.action for record in service.get_certificate_history(issued_certificate.id)]
        assert actions[0] == TransactionAction.DELETED

    def test_delete_requires_admin(self, service, issued_certificate):
        with pytest.raises(PermissionDeniedError):
            service.delete_certificate(issued_certificate.id, "student-042")


class TestConcurrentTransitions:
    """Параллельные переходы статуса не перезаписывают друг друга"""

    def test_parallel_issue_succeeds_once(self, repository, settings, clock, dispatcher, make_request):
        service = CertificateService(repository=repository, settings=settings, clock=clock,
                                     dispatcher=dispatcher, renderer=BarrierRenderer(2))
        certificate = service.create_certificate(make_request())

        def issue(_):
            try:
                return service.issue_certificate(certificate.id, "ca-001")
            except InvalidStateError as e:
                return e

        with ThreadPoolExecutor(max_workers=2) as executor:
            outcomes = list(executor.map(issue, range(2)))

        assert sum(isinstance(outcome, InvalidStateError) for outcome in outcomes) == 1
        issued_records = [record for record in service.get_certificate_history(certificate.id)
                          if record.action == TransactionAction.ISSUED]
        assert len(issued_records) == 1

        stored = service.get_certificate(certificate.id)
        assert stored.status == CertificateStatus.ISSUED
        assert Path(stored.artifact_path).exists()

    def test_parallel_approval_of_same_step(self, service, two_step_request):
        certificate = service.create_certificate(two_step_request)

        def approve(_):
            try:
                service.approve_certificate(certificate.id, "head-1", "s1", "ok")
                return True
            except InvalidStateError:
                return False

        with ThreadPoolExecutor(max_workers=2) as executor:
            outcomes = list(executor.map(approve, range(2)))

        assert outcomes.count(True) == 1
        approvals = [record for record in service.get_certificate_history(certificate.id)
                     if record.action == TransactionAction.APPROVED]
        assert len(approvals) == 1
        assert service.get_certificate(certificate.id).current_approval_step == "s2"

    def test_parallel_approval_of_all_steps_completes_chain(self, service, two_step_request):
        """Одновременное согласование разных шагов завершает цепочку"""
        certificate = service.create_certificate(two_step_request)
        decisions = [("head-1", "s1"), ("dean-1", "s2")]

        with ThreadPoolExecutor(max_workers=2) as executor:
            list(executor.map(lambda d: service.approve_certificate(certificate.id, d[0], d[1]), decisions))

        stored = service.get_certificate(certificate.id)
        assert stored.status == CertificateStatus.APPROVED
        assert stored.current_approval_step is None

    def test_revoke_after_concurrent_change_rejected(self, service, repository, two_step_request):
        """Отзыв не перезаписывает статус, измененный после чтения"""
        certificate = service.create_certificate(two_step_request)
        service.approve_certificate(certificate.id, "head-1", "s1")
        service.approve_certificate(certificate.id, "dean-1", "s2")

        def write(session):
            return repository.update(session, certificate.id, {"status": CertificateStatus.REVOKED},
                                     expected_statuses=[CertificateStatus.PENDING])

        assert repository.run_transaction(write) == 0
        assert service.get_certificate(certificate.id).status == CertificateStatus.APPROVED
