"""
Выпуск, согласование, распространение и проверка сертификатов.
"""

from .service import CertificateService, get_certificate_service
from .models import Certificate, CertificateRequest, CertificateFilter, ApprovalStep, ShareToken
from .generator import IdentifierGenerator, IntegrityHasher
from .validators import DataValidator
from .database import get_db_manager, get_certificate_repo

__version__ = "1.0.0"

__all__ = [
    'CertificateService',
    'get_certificate_service',
    'Certificate',
    'CertificateRequest',
    'CertificateFilter',
    'ApprovalStep',
    'ShareToken',
    'IdentifierGenerator',
    'IntegrityHasher',
    'DataValidator',
    'get_db_manager',
    'get_certificate_repo'
]
