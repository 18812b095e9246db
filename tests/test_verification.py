"""
Тесты проверки сертификатов
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from certrepo.exceptions import CertificateNotFoundError, ExhaustedTokenError, ValidationError
from certrepo.models import CertificateStatus, TransactionAction
from certrepo.verification import ANONYMOUS


class TestVerifyById:
    """Тесты проверки по ID"""

    def test_verification_counts(self, service, issued_certificate, clock):
        clock.advance(minutes=1)

        first = service.verify_by_id(issued_certificate.id)
        second = service.verify_by_id(issued_certificate.id, "hr-777")

        assert first.verification_count == 1
        assert second.verification_count == 2
        assert second.access_count == 0
        assert second.last_accessed_at == clock.now()

    def test_verification_does_not_change_status(self, service, make_request):
        certificate = service.create_certificate(make_request())

        verified = service.verify_by_id(certificate.id)

        assert verified.status == CertificateStatus.DRAFT
        assert verified.verification_count == 1

    def test_verification_audit(self, service, issued_certificate):
        service.verify_by_id(issued_certificate.id)

        record = service.get_certificate_history(issued_certificate.id)[0]
        assert record.action == TransactionAction.ACCESSED
        assert record.action.value == "accessed"
        assert record.performed_by == ANONYMOUS
        assert record.details["method"] == "direct_verification"

    def test_unknown_certificate(self, service):
        with pytest.raises(CertificateNotFoundError):
            service.verify_by_id("missing")


class TestVerifyByCode:
    """Тесты проверки по коду и QR-коду"""

    def test_verify_by_code(self, service, issued_certificate):
        certificate = service.verify_by_code(issued_certificate.verification_code)

        assert certificate.id == issued_certificate.id
        assert certificate.verification_count == 1

    def test_code_is_case_insensitive(self, service, issued_certificate):
        certificate = service.verify_by_code(f" {issued_certificate.verification_code.lower()} ")
        assert certificate.id == issued_certificate.id

    @pytest.mark.parametrize("code", ["", "ABC", "ABCDEFG!", "ABCDEFGHI"])
    def test_malformed_code(self, service, code):
        with pytest.raises(ValidationError):
            service.verify_by_code(code)

    def test_unknown_code(self, service, issued_certificate):
        code = "ZZZZZZZZ" if issued_certificate.verification_code != "ZZZZZZZZ" else "YYYYYYYY"

        with pytest.raises(CertificateNotFoundError):
            service.verify_by_code(code)

    def test_verify_by_verification_id(self, service, issued_certificate):
        certificate = service.verify_by_verification_id(issued_certificate.verification_id)

        assert certificate.id == issued_certificate.id
        history = service.get_certificate_history(issued_certificate.id)
        assert history[0].details["method"] == "verification_id"

    def test_verify_qr_payload(self, service, issued_certificate):
        certificate = service.verify_qr_payload(issued_certificate.qr_code)

        assert certificate.id == issued_certificate.id
        assert certificate.verification_count == 1

    def test_qr_with_wrong_verification_id(self, service, issued_certificate, settings):
        payload = f"{settings.verification_base_url}/{issued_certificate.id}?v=0000000000000000"

        with pytest.raises(CertificateNotFoundError):
            service.verify_qr_payload(payload)

    def test_malformed_qr_payload(self, service):
        with pytest.raises(ValidationError):
            service.verify_qr_payload("https://certs.example.edu/verify/")


class TestAssess:
    """Тесты оценки действительности"""

    def test_issued_is_valid(self, service, issued_certificate):
        result = service.assess(issued_certificate)

        assert result.exists is True
        assert result.valid is True
        assert result.status == CertificateStatus.ISSUED

    def test_draft_is_not_valid(self, service, make_request):
        result = service.assess(service.create_certificate(make_request()))
        assert result.valid is False

    def test_revoked_is_not_valid(self, service, issued_certificate):
        revoked = service.revoke_certificate(issued_certificate.id, "ca-001", "подделка")
        result = service.assess(revoked)

        assert result.valid is False
        assert "подделка" in result.message

    def test_expired_is_not_valid(self, service, make_request, clock):
        certificate = service.create_certificate(make_request(expires_at=clock.now() + timedelta(days=30)))
        issued = service.issue_certificate(certificate.id, "ca-001")
        clock.advance(days=31)

        assert service.assess(issued).valid is False


class TestConcurrentVerification:
    """Параллельные обращения не теряют инкременты"""

    def test_parallel_verifications(self, service, issued_certificate):
        attempts = 20

        with ThreadPoolExecutor(max_workers=5) as executor:
            results = list(executor.map(lambda _: service.verify_by_id(issued_certificate.id), range(attempts)))

        assert len(results) == attempts
        assert service.get_certificate(issued_certificate.id).verification_count == attempts

    def test_parallel_token_access_respects_limit(self, service, issued_certificate):
        limit = 3
        share_token = service.create_share_token(issued_certificate.id, "student-042", max_access=limit)

        def access(_):
            try:
                service.verify_by_token(share_token.token)
                return True
            except ExhaustedTokenError:
                return False

        with ThreadPoolExecutor(max_workers=5) as executor:
            outcomes = list(executor.map(access, range(10)))

        assert outcomes.count(True) == limit
        assert service.list_share_tokens(issued_certificate.id)[0].current_access == limit
        assert service.get_certificate(issued_certificate.id).access_count == limit
