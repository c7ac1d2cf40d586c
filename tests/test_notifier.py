"""Notifier adapters and the channel factory."""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from quoteboard.adapters import Notifier, create_notifier
from quoteboard.adapters.log_adapter import LogAdapter
from quoteboard.adapters.smtp_adapter import SMTPAdapter
from quoteboard.config import ServiceConfig, SMTPConfig
from quoteboard.errors import NotificationError
from quoteboard.schemas import ReminderMessage

MESSAGE = ReminderMessage(
    quote_id="q_1", to="a@x.com", subject="Quote follow-up: Roof for Acme", body="Chase it"
)


def _smtp_server(starttls=True):
    server = MagicMock()
    server.__enter__.return_value = server
    server.has_extn.return_value = starttls
    return server


class TestFactory:

    def test_log_when_no_host(self):
        notifier = create_notifier(ServiceConfig())
        assert isinstance(notifier, LogAdapter)
        assert isinstance(notifier, Notifier)

    def test_smtp_when_host_set(self):
        notifier = create_notifier(ServiceConfig(smtp=SMTPConfig(host="mail.local")))
        assert isinstance(notifier, SMTPAdapter)
        assert notifier.channel_name == "smtp"
        assert notifier.is_enabled


class TestSMTPAdapter:

    def test_build_message(self):
        adapter = SMTPAdapter(SMTPConfig(host="mail.local", from_address="sales@acme.example"))
        msg = adapter.build_message(MESSAGE)
        assert msg["To"] == "a@x.com"
        assert msg["From"] == "sales@acme.example"
        assert msg["Subject"] == "Quote follow-up: Roof for Acme"
        assert msg.get_content().strip() == "Chase it"

    @pytest.mark.asyncio
    async def test_send_starttls_and_login(self):
        server = _smtp_server()
        adapter = SMTPAdapter(SMTPConfig(host="mail.local", username="bot", password="pw"))
        with patch("quoteboard.adapters.smtp_adapter.smtplib.SMTP", return_value=server) as smtp:
            assert await adapter.send(MESSAGE) is True

        smtp.assert_called_once_with("mail.local", 587, timeout=30.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("bot", "pw")
        server.send_message.assert_called_once()

    @pytest.mark.asyncio
    async def test_send_implicit_tls(self):
        server = _smtp_server()
        adapter = SMTPAdapter(SMTPConfig(host="mail.local", port=465, secure=True))
        with patch("quoteboard.adapters.smtp_adapter.smtplib.SMTP_SSL", return_value=server) as smtp_ssl:
            await adapter.send(MESSAGE)

        smtp_ssl.assert_called_once_with("mail.local", 465, timeout=30.0)
        server.starttls.assert_not_called()
        server.login.assert_not_called()

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        server = _smtp_server()
        server.send_message.side_effect = smtplib.SMTPRecipientsRefused({"a@x.com": (550, b"no")})
        adapter = SMTPAdapter(SMTPConfig(host="mail.local"))
        with patch("quoteboard.adapters.smtp_adapter.smtplib.SMTP", return_value=server):
            with pytest.raises(NotificationError):
                await adapter.send(MESSAGE)

    @pytest.mark.asyncio
    async def test_connection_refused_raises(self):
        adapter = SMTPAdapter(SMTPConfig(host="mail.local"))
        with patch(
            "quoteboard.adapters.smtp_adapter.smtplib.SMTP",
            side_effect=ConnectionRefusedError("refused"),
        ):
            with pytest.raises(NotificationError):
                await adapter.send(MESSAGE)


class TestLogAdapter:

    @pytest.mark.asyncio
    async def test_send_logs_and_succeeds(self, caplog):
        caplog.set_level("INFO", logger="quoteboard.adapters.log_adapter")
        assert await LogAdapter().send(MESSAGE) is True
        assert "a@x.com" in caplog.text
        assert await LogAdapter().health_check() is True
