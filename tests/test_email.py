import smtplib
from unittest.mock import MagicMock, patch

from storefront.service.email import EmailService


class TestDevMode:
    def test_unconfigured_service_logs_instead_of_sending(self):
        service = EmailService()
        assert not service.is_configured
        with patch("storefront.service.email.logger") as mock_logger:
            assert service.send_verification_email("alice@x.com", "raw") is True
        event = mock_logger.info.call_args[0][0]
        assert event == "email_dev_mode"
        assert mock_logger.info.call_args[1]["recipient"] == "alice@x.com"


class TestLinks:
    def test_verification_url_points_at_api(self):
        service = EmailService(client_url="https://shop.example/")
        assert (
            service.verification_url("a b")
            == "https://shop.example/api/v1/auth/verify-email?token=a%20b"
        )

    def test_reset_url_points_at_client(self):
        service = EmailService(client_url="https://shop.example")
        assert service.reset_url("tok") == "https://shop.example/reset-password?token=tok"


class TestSmtp:
    def _service(self):
        return EmailService(
            smtp_host="smtp.example",
            smtp_user="mailer",
            smtp_password="secret",
            from_email="noreply@shop.example",
        )

    def test_successful_send(self):
        server = MagicMock()
        smtp = MagicMock()
        smtp.return_value.__enter__.return_value = server
        with patch("storefront.service.email.smtplib.SMTP", smtp):
            assert self._service().send_password_reset_email("bob@x.com", "tok") is True
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "secret")
        sender, recipient, _ = server.sendmail.call_args[0]
        assert sender == "noreply@shop.example"
        assert recipient == "bob@x.com"

    def test_connection_failure_returns_false(self):
        with patch(
            "storefront.service.email.smtplib.SMTP", side_effect=OSError("refused")
        ):
            assert self._service().send_verification_email("bob@x.com", "tok") is False

    def test_smtp_error_returns_false(self):
        server = MagicMock()
        server.sendmail.side_effect = smtplib.SMTPException("boom")
        smtp = MagicMock()
        smtp.return_value.__enter__.return_value = server
        with patch("storefront.service.email.smtplib.SMTP", smtp):
            assert self._service().send_verification_email("bob@x.com", "tok") is False
