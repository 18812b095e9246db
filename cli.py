"""
CLI интерфейс для репозитория сертификатов
"""
import argparse
import logging
import sys
from datetime import datetime, timedelta

from certrepo.exceptions import CertificateError, ValidationError
from certrepo.models import ApprovalStep, Certificate, CertificateFilter, CertificateRequest, CertificateType
from certrepo.service import CertificateService
from config.settings import get_settings


class CertificateCLI:
    """CLI интерфейс для работы с сертификатами"""

    def __init__(self, service: CertificateService = None):
        self.settings = get_settings()
        self.setup_logging()
        self._service = service

    def setup_logging(self):
        """Настройка логирования"""
        self.settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, self.settings.log_level),
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            handlers=[
                logging.FileHandler(self.settings.log_file, encoding='utf-8'),
                logging.StreamHandler()
            ]
        )
        self.logger = logging.getLogger(__name__)

    @property
    def service(self) -> CertificateService:
        if self._service is None:
            self._service = CertificateService(settings=self.settings)
        return self._service

    def print_certificate(self, certificate: Certificate):
        print(f"  ID: {certificate.id}")
        print(f"  Код проверки: {certificate.verification_code}")
        print(f"  Название: {certificate.title}")
        print(f"  Получатель: {certificate.recipient_name} <{certificate.recipient_email}>")
        print(f"  Статус: {certificate.status_display_name}")
        if certificate.current_approval_step:
            print(f"  Текущий шаг согласования: {certificate.current_approval_step}")
        if certificate.expires_at:
            print(f"  Действует до: {certificate.expires_at.strftime('%d.%m.%Y')}")

    def init_db(self, args):
        """Создание таблиц БД"""
        db_manager = self.service.repository.db_manager
        if not db_manager.health_check():
            print("✗ Не удалось подключиться к базе данных")
            sys.exit(1)
        db_manager.create_tables()
        print("✓ Таблицы базы данных созданы")

    def create_certificate(self, args):
        """Создание сертификата через CLI"""
        steps = []
        for order, step in enumerate(args.step or []):
            step_id, _, approver_id = step.partition(':')
            steps.append(ApprovalStep(id=step_id, step_name=step_id, order=order, approver_id=approver_id))

        expires_at = None
        if args.expires:
            try:
                expires_at = datetime.strptime(args.expires, '%d.%m.%Y')
            except ValueError:
                print(f"✗ Ошибка валидации: дата должна быть в формате DD.MM.YYYY: {args.expires}")
                sys.exit(1)

        try:
            request = CertificateRequest(
                issuer_id=args.issuer,
                recipient_id=args.recipient_id or "",
                recipient_email=args.email,
                recipient_name=args.name or "",
                organization_id=args.organization or "",
                title=args.title,
                type=CertificateType(args.type),
                expires_at=expires_at,
                requires_approval=bool(steps),
                approval_steps=steps,
            )
            certificate = self.service.create_certificate(request)
        except ValidationError as e:
            print(f"✗ Ошибка валидации: {e}")
            sys.exit(1)
        except CertificateError as e:
            print(f"✗ Ошибка: {e}")
            sys.exit(1)

        print("✓ Сертификат успешно создан:")
        self.print_certificate(certificate)

    def issue_certificate(self, args):
        self._run(lambda: self.service.issue_certificate(args.certificate_id, args.actor),
                  "✓ Сертификат выпущен:")

    def approve_certificate(self, args):
        self._run(lambda: self.service.approve_certificate(args.certificate_id, args.actor, args.step,
                                                           args.comments),
                  "✓ Шаг согласован:")

    def reject_certificate(self, args):
        self._run(lambda: self.service.reject_certificate(args.certificate_id, args.actor, args.step,
                                                          args.comments),
                  "✓ Сертификат отклонен:")

    def revoke_certificate(self, args):
        self._run(lambda: self.service.revoke_certificate(args.certificate_id, args.actor, args.reason),
                  "✓ Сертификат отозван:")

    def share_certificate(self, args):
        """Создание токена доступа"""
        try:
            share_token = self.service.create_share_token(
                args.certificate_id,
                args.actor,
                validity=timedelta(days=args.days) if args.days else None,
                password=args.password,
                max_access=args.max_access,
            )
        except CertificateError as e:
            print(f"✗ Ошибка: {e}")
            sys.exit(1)

        print("✓ Токен доступа создан:")
        print(f"  Токен: {share_token.token}")
        print(f"  Действует до: {share_token.expires_at.strftime('%d.%m.%Y %H:%M')}")
        print(f"  Лимит обращений: {share_token.max_access}")

    def verify_certificate(self, args):
        """Проверка сертификата через CLI"""
        try:
            if args.code:
                certificate = self.service.verify_by_code(args.certificate_id)
            else:
                certificate = self.service.verify_by_id(args.certificate_id)
        except CertificateError as e:
            print(f"✗ {e}")
            sys.exit(1)

        result = self.service.assess(certificate)
        print("✓ Сертификат найден:")
        self.print_certificate(certificate)
        print(f"  Проверок: {certificate.verification_count}")
        print(f"  Результат: {'✓' if result.valid else '✗'} {result.message}")

    def verify_token(self, args):
        try:
            certificate = self.service.verify_by_token(args.token, args.password)
        except CertificateError as e:
            print(f"✗ Доступ запрещен: {e}")
            sys.exit(1)

        print("✓ Доступ по токену предоставлен:")
        self.print_certificate(certificate)

    def show_history(self, args):
        try:
            records = self.service.get_certificate_history(args.certificate_id)
        except CertificateError as e:
            print(f"✗ Ошибка: {e}")
            sys.exit(1)

        if not records:
            print("  Записей нет")
        for record in records:
            print(f"  {record.timestamp.strftime('%d.%m.%Y %H:%M:%S')} {record.action.value} ({record.performed_by})")

    def list_certificates(self, args):
        """Список сертификатов"""
        try:
            certificates = self.service.search_certificates(CertificateFilter(
                issuer_id=args.issuer,
                organization_id=args.organization,
                limit=args.limit,
            ))
        except CertificateError as e:
            print(f"✗ Ошибка получения списка: {e}")
            sys.exit(1)

        if not certificates:
            print("  Сертификаты не найдены")
        for certificate in certificates:
            print(f"  {certificate.id} [{certificate.status.value}] {certificate.title}")

    def show_statistics(self, args):
        try:
            stats = self.service.get_statistics(issuer_id=args.issuer, organization_id=args.organization)
        except CertificateError as e:
            print(f"✗ Ошибка: {e}")
            sys.exit(1)

        print("Статистика сертификатов:")
        print(f"  Всего: {stats.total_certificates}")
        print(f"  Выпущено: {stats.issued_certificates}")
        print(f"  На согласовании: {stats.pending_certificates}")
        print(f"  Отозвано: {stats.revoked_certificates}")
        print(f"  Истекло: {stats.expired_certificates}")
        print(f"  Распространено: {stats.shared_certificates}")

    def _run(self, operation, success_message: str):
        try:
            certificate = operation()
        except CertificateError as e:
            print(f"✗ Ошибка: {e}")
            self.logger.error(f"Ошибка выполнения команды: {e}")
            sys.exit(1)

        print(success_message)
        self.print_certificate(certificate)

    def build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Выпуск, согласование и проверка сертификатов",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Примеры использования:
  %(prog)s init-db
  %(prog)s create --issuer ca-001 --email student@university.edu --title "Основы ML" --step s1:head-1
  %(prog)s approve <certificate_id> --step s1 --actor head-1
  %(prog)s issue <certificate_id> --actor ca-001
  %(prog)s share <certificate_id> --actor student-042 --max-access 5
  %(prog)s verify K7QM2XP9 --code
            """
        )

        subparsers = parser.add_subparsers(dest='command', help='Доступные команды')

        subparsers.add_parser('init-db', help='Создание таблиц БД')

        create_parser = subparsers.add_parser('create', help='Создание сертификата')
        create_parser.add_argument('--issuer', required=True, help='ID выпускающего')
        create_parser.add_argument('--email', required=True, help='Email получателя')
        create_parser.add_argument('--title', required=True, help='Название сертификата')
        create_parser.add_argument('--name', help='Имя получателя')
        create_parser.add_argument('--recipient-id', help='ID получателя')
        create_parser.add_argument('--organization', help='ID организации')
        create_parser.add_argument('--type', default=CertificateType.COMPLETION.value,
                                   choices=[t.value for t in CertificateType], help='Тип сертификата')
        create_parser.add_argument('--expires', help='Дата окончания действия (DD.MM.YYYY)')
        create_parser.add_argument('--step', action='append',
                                   help='Шаг согласования ID:APPROVER (можно указать несколько)')

        for name, help_text in (('issue', 'Выпуск сертификата'), ('revoke', 'Отзыв сертификата')):
            sub = subparsers.add_parser(name, help=help_text)
            sub.add_argument('certificate_id', help='ID сертификата')
            sub.add_argument('--actor', required=True, help='Кто выполняет действие')
            if name == 'revoke':
                sub.add_argument('--reason', default='', help='Причина отзыва')

        for name, help_text in (('approve', 'Согласование шага'), ('reject', 'Отклонение шага')):
            sub = subparsers.add_parser(name, help=help_text)
            sub.add_argument('certificate_id', help='ID сертификата')
            sub.add_argument('--step', required=True, help='ID шага согласования')
            sub.add_argument('--actor', required=True, help='ID согласующего')
            sub.add_argument('--comments', help='Комментарий')

        share_parser = subparsers.add_parser('share', help='Создание токена доступа')
        share_parser.add_argument('certificate_id', help='ID сертификата')
        share_parser.add_argument('--actor', required=True, help='Кто делится')
        share_parser.add_argument('--days', type=int, help='Срок действия в днях')
        share_parser.add_argument('--password', help='Пароль доступа')
        share_parser.add_argument('--max-access', type=int, help='Лимит обращений')

        verify_parser = subparsers.add_parser('verify', help='Проверка сертификата')
        verify_parser.add_argument('certificate_id', help='ID сертификата или код проверки')
        verify_parser.add_argument('--code', action='store_true', help='Проверка по коду проверки')

        token_parser = subparsers.add_parser('verify-token', help='Доступ по токену')
        token_parser.add_argument('token', help='Токен доступа')
        token_parser.add_argument('--password', help='Пароль доступа')

        history_parser = subparsers.add_parser('history', help='Журнал операций')
        history_parser.add_argument('certificate_id', help='ID сертификата')

        for name, help_text in (('list', 'Список сертификатов'), ('stats', 'Статистика')):
            sub = subparsers.add_parser(name, help=help_text)
            sub.add_argument('--issuer', help='ID выпускающего')
            sub.add_argument('--organization', help='ID организации')
            if name == 'list':
                sub.add_argument('--limit', type=int, default=20, help='Максимум записей')

        return parser

    def main(self, argv=None):
        """Главная функция CLI"""
        parser = self.build_parser()
        args = parser.parse_args(argv)

        if not args.command:
            parser.print_help()
            return

        commands = {
            'init-db': self.init_db,
            'create': self.create_certificate,
            'issue': self.issue_certificate,
            'approve': self.approve_certificate,
            'reject': self.reject_certificate,
            'revoke': self.revoke_certificate,
            'share': self.share_certificate,
            'verify': self.verify_certificate,
            'verify-token': self.verify_token,
            'history': self.show_history,
            'list': self.list_certificates,
            'stats': self.show_statistics,
        }
        commands[args.command](args)


if __name__ == '__main__':
    cli = CertificateCLI()
    cli.main()
