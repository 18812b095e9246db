"""
Тесты цепочки согласования
"""
import pytest

from certrepo.approval import select_next_pending_step
from certrepo.exceptions import ApprovalStepNotFoundError, CertificateNotFoundError, InvalidStateError
from certrepo.models import ApprovalStep, ApprovalStepStatus, CertificateStatus, TransactionAction
from certrepo.notifications import NotificationTemplate


class TestSelectNextPendingStep:
    """Тесты выбора текущего шага"""

    def test_lowest_order_wins(self):
        steps = [ApprovalStep(id="b", order=2, position=0), ApprovalStep(id="a", order=1, position=1)]
        assert select_next_pending_step(steps).id == "a"

    def test_position_breaks_ties(self):
        """При равном order выбирается шаг, стоящий раньше в списке"""
        steps = [
            ApprovalStep(id="second", order=0, position=1),
            ApprovalStep(id="first", order=0, position=0),
        ]
        assert select_next_pending_step(steps).id == "first"

    def test_decided_steps_skipped(self):
        steps = [
            ApprovalStep(id="a", order=0, position=0, status=ApprovalStepStatus.APPROVED),
            ApprovalStep(id="b", order=1, position=1),
        ]
        assert select_next_pending_step(steps).id == "b"

    def test_no_pending_steps(self):
        steps = [ApprovalStep(id="a", status=ApprovalStepStatus.APPROVED)]
        assert select_next_pending_step(steps) is None
        assert select_next_pending_step([]) is None


class TestApproveCertificate:
    """Тесты согласования"""

    def test_two_step_chain_then_issue(self, service, two_step_request, dispatcher):
        """Сценарий: двухшаговое согласование и выпуск"""
        certificate = service.create_certificate(two_step_request)
        assert certificate.status == CertificateStatus.PENDING
        assert certificate.current_approval_step == "s1"

        certificate = service.approve_certificate(certificate.id, "head-1", "s1", "ok")
        assert certificate.status == CertificateStatus.PENDING
        assert certificate.current_approval_step == "s2"
        assert NotificationTemplate.CERTIFICATE_APPROVED not in dispatcher.templates()

        certificate = service.approve_certificate(certificate.id, "dean-1", "s2", "ok")
        assert certificate.status == CertificateStatus.APPROVED
        assert certificate.current_approval_step is None
        assert all(step.status == ApprovalStepStatus.APPROVED for step in certificate.approval_steps)

        approved = [entry for entry in dispatcher.sent if entry[1] == NotificationTemplate.CERTIFICATE_APPROVED]
        assert len(approved) == 1
        assert approved[0][0] == "ca-001"

        issued = service.issue_certificate(certificate.id, "ca-001")
        assert issued.status == CertificateStatus.ISSUED

    def test_step_decision_is_recorded(self, service, two_step_request, clock):
        certificate = service.create_certificate(two_step_request)
        clock.advance(minutes=5)

        certificate = service.approve_certificate(certificate.id, "head-1", "s1", "Согласовано")
        step = certificate.find_step("s1")

        assert step.status == ApprovalStepStatus.APPROVED
        assert step.approved_at == clock.now()
        assert step.comments == "Согласовано"
        assert step.approver_id == "head-1"

    def test_approval_audit_details(self, service, two_step_request):
        certificate = service.create_certificate(two_step_request)
        service.approve_certificate(certificate.id, "head-1", "s1", "ok")

        record = service.get_certificate_history(certificate.id)[0]
        assert record.action == TransactionAction.APPROVED
        assert record.performed_by == "head-1"
        assert record.details["step_id"] == "s1"
        assert record.details["chain_completed"] is False
        assert record.details["next_step"] == "s2"

    def test_out_of_order_approval_allowed(self, service, two_step_request):
        """Шаг можно согласовать раньше предыдущего, текущим остается незавершенный"""
        certificate = service.create_certificate(two_step_request)

        certificate = service.approve_certificate(certificate.id, "dean-1", "s2")

        assert certificate.status == CertificateStatus.PENDING
        assert certificate.current_approval_step == "s1"

    def test_unknown_step(self, service, two_step_request):
        certificate = service.create_certificate(two_step_request)

        with pytest.raises(ApprovalStepNotFoundError):
            service.approve_certificate(certificate.id, "head-1", "missing")

    def test_step_decided_twice(self, service, two_step_request):
        certificate = service.create_certificate(two_step_request)
        service.approve_certificate(certificate.id, "head-1", "s1")

        with pytest.raises(InvalidStateError):
            service.approve_certificate(certificate.id, "head-1", "s1")

    def test_approve_draft_rejected(self, service, make_request):
        """Черновик без цепочки согласовать нельзя"""
        certificate = service.create_certificate(make_request())

        with pytest.raises(InvalidStateError):
            service.approve_certificate(certificate.id, "head-1", "s1")

    def test_approve_unknown_certificate(self, service):
        with pytest.raises(CertificateNotFoundError):
            service.approve_certificate("missing", "head-1", "s1")

    def test_approve_after_completion_rejected(self, service, two_step_request):
        certificate = service.create_certificate(two_step_request)
        service.approve_certificate(certificate.id, "head-1", "s1")
        service.approve_certificate(certificate.id, "dean-1", "s2")

        with pytest.raises(InvalidStateError):
            service.approve_certificate(certificate.id, "dean-1", "s2")


class TestRejectCertificate:
    """Тесты отклонения"""

    def test_reject_stops_chain(self, service, two_step_request, dispatcher):
        certificate = service.create_certificate(two_step_request)

        certificate = service.reject_certificate(certificate.id, "head-1", "s1", "Неполные данные")

        assert certificate.status == CertificateStatus.REJECTED
        assert certificate.current_approval_step is None
        assert certificate.find_step("s1").status == ApprovalStepStatus.REJECTED
        assert certificate.find_step("s2").status == ApprovalStepStatus.PENDING

        recipient, template, payload = dispatcher.sent[-1]
        assert template == NotificationTemplate.CERTIFICATE_REJECTED
        assert recipient == "ca-001"
        assert payload["comments"] == "Неполные данные"

    def test_rejected_certificate_cannot_be_approved(self, service, two_step_request):
        certificate = service.create_certificate(two_step_request)
        service.reject_certificate(certificate.id, "head-1", "s1")

        with pytest.raises(InvalidStateError):
            service.approve_certificate(certificate.id, "dean-1", "s2")

    def test_rejected_certificate_cannot_be_issued(self, service, two_step_request):
        certificate = service.create_certificate(two_step_request)
        service.reject_certificate(certificate.id, "head-1", "s1")

        with pytest.raises(InvalidStateError):
            service.issue_certificate(certificate.id, "ca-001")

    def test_reject_audit_record(self, service, two_step_request):
        certificate = service.create_certificate(two_step_request)
        service.reject_certificate(certificate.id, "dean-1", "s2", "нет")

        record = service.get_certificate_history(certificate.id)[0]
        assert record.action == TransactionAction.REJECTED
        assert record.details == {"step_id": "s2", "step_name": "Деканат", "comments": "нет"}
