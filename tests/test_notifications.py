from unittest.mock import MagicMock

import pytest

import notifications
from exceptions import NotificationError
from notifications import (
    PAYMENT_RECEIPT,
    SERVICE_REPORT,
    NotificationGateway,
    SendGridMailer,
    SupabaseFunctionGateway,
    gateway_from_env,
    notify,
    render_payment_receipt,
    render_service_report,
)

RECEIPT = {
    "to_email": "ana@example.com",
    "customer_name": "Ana",
    "folio": "INV-OS-0001",
    "payment_amount": 1500,
    "payment_method": "Efectivo",
    "payment_date": "2026-01-15",
    "reference_number": None,
    "previous_balance": 2000,
    "new_balance": 500,
    "total_invoice": 2320,
    "is_fully_paid": False,
}


class TestTemplates:
    def test_payment_receipt(self):
        to_email, subject, html = render_payment_receipt(RECEIPT)
        assert to_email == "ana@example.com"
        assert subject == "Alarmas ADZ - Recibo de pago INV-OS-0001"
        assert "$1,500.00" in html
        assert "Saldo pendiente: $500.00" in html
        assert "Referencia" not in html

    def test_service_report(self):
        to_email, subject, html = render_service_report(
            {
                "customerEmail": "ana@example.com",
                "customerName": "Ana",
                "reportData": {
                    "report_number": "OS-0001",
                    "materials_used": [{"name": "Sensor PIR", "quantity": 2, "unit_cost": 450, "total_cost": 900}],
                    "total_cost": 1100,
                },
            }
        )
        assert to_email == "ana@example.com"
        assert "OS-0001" in subject
        assert "<td>Sensor PIR</td>" in html
        assert "$1,100.00" in html


class TestSendGridMailer:
    def test_sends_rendered_email(self, monkeypatch):
        client_cls = MagicMock()
        monkeypatch.setattr(notifications, "SendGridAPIClient", client_cls)

        assert SendGridMailer("SG.key", "facturacion@example.com").invoke(PAYMENT_RECEIPT, RECEIPT) is True

        client_cls.assert_called_once_with("SG.key")
        message = client_cls.return_value.send.call_args[0][0]
        assert message.subject.subject == "Alarmas ADZ - Recibo de pago INV-OS-0001"

    def test_without_api_key_nothing_is_sent(self, monkeypatch):
        client_cls = MagicMock()
        monkeypatch.setattr(notifications, "SendGridAPIClient", client_cls)

        assert SendGridMailer("", "facturacion@example.com").invoke(PAYMENT_RECEIPT, RECEIPT) is False
        client_cls.assert_not_called()

    def test_send_failure(self, monkeypatch):
        client_cls = MagicMock()
        client_cls.return_value.send.side_effect = RuntimeError("401 Unauthorized")
        monkeypatch.setattr(notifications, "SendGridAPIClient", client_cls)

        with pytest.raises(NotificationError, match="401"):
            SendGridMailer("SG.key", "facturacion@example.com").invoke(PAYMENT_RECEIPT, RECEIPT)

    def test_unknown_template_and_missing_recipient(self):
        mailer = SendGridMailer("SG.key", "facturacion@example.com")
        with pytest.raises(NotificationError):
            mailer.invoke("send-newsletter", {})
        with pytest.raises(NotificationError):
            mailer.invoke(SERVICE_REPORT, {"reportData": {}})


class TestSupabaseFunctionGateway:
    def test_invokes_edge_function(self):
        client = MagicMock()
        assert SupabaseFunctionGateway(client).invoke(PAYMENT_RECEIPT, RECEIPT) is True
        client.functions.invoke.assert_called_once_with(PAYMENT_RECEIPT, invoke_options={"body": RECEIPT})

    def test_failure_is_wrapped(self):
        client = MagicMock()
        client.functions.invoke.side_effect = RuntimeError("FunctionsHttpError")
        with pytest.raises(NotificationError):
            SupabaseFunctionGateway(client).invoke(PAYMENT_RECEIPT, RECEIPT)


class TestNotify:
    def test_no_gateway(self):
        assert notify(None, PAYMENT_RECEIPT, RECEIPT) is False

    def test_failure_is_logged_not_raised(self, caplog):
        gateway = MagicMock(spec=NotificationGateway)
        gateway.invoke.side_effect = NotificationError("down")

        assert notify(gateway, PAYMENT_RECEIPT, RECEIPT) is False
        assert "Notification send-payment-receipt failed" in caplog.text


def test_gateway_from_env_prefers_sendgrid(monkeypatch):
    monkeypatch.setenv("SENDGRID_API_KEY", "SG.key")
    monkeypatch.setenv("FROM_EMAIL", "facturacion@example.com")
    gateway = gateway_from_env()
    assert isinstance(gateway, SendGridMailer)
    assert gateway.from_email == "facturacion@example.com"


def test_gateway_from_env_none(monkeypatch):
    for var in ("SENDGRID_API_KEY", "SUPABASE_URL", "SUPABASE_SERVICE_KEY", "SUPABASE_ANON_KEY"):
        monkeypatch.delenv(var, raising=False)
    assert gateway_from_env() is None
