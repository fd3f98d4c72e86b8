# notifications.py
import logging
import os
from typing import Any, Callable, Dict, Optional, Tuple

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail
from supabase import Client, create_client

from exceptions import NotificationError

logger = logging.getLogger(__name__)

PAYMENT_RECEIPT = "send-payment-receipt"
SERVICE_REPORT = "send-service-report"
DIGITAL_CARD = "send-digital-card"

COMPANY_NAME = "Alarmas ADZ"


# ----------------------------
# Formatting helpers
# ----------------------------
def _mxn(x) -> str:
    try:
        if x is None:
            return ""
        return f"${float(x):,.2f}"
    except (TypeError, ValueError):
        return str(x)


def _text(x) -> str:
    return "" if x is None else str(x)


# ----------------------------
# Templates: payload -> (recipient, subject, html)
# ----------------------------
def render_payment_receipt(payload: Dict[str, Any]) -> Tuple[str, str, str]:
    folio = _text(payload.get("folio"))
    status = "Pagado en su totalidad" if payload.get("is_fully_paid") else f"Saldo pendiente: {_mxn(payload.get('new_balance'))}"
    reference = payload.get("reference_number")

    html = f"""
    <p>Hola {_text(payload.get("customer_name")) or "Cliente"},</p>
    <p>Recibimos tu pago para el documento <b>{folio}</b>.</p>
    <p><b>Monto:</b> {_mxn(payload.get("payment_amount"))}<br>
    <b>Método:</b> {_text(payload.get("payment_method"))}<br>
    <b>Fecha:</b> {_text(payload.get("payment_date"))}<br>
    {f"<b>Referencia:</b> {reference}<br>" if reference else ""}
    <b>Saldo anterior:</b> {_mxn(payload.get("previous_balance"))}<br>
    <b>Total del documento:</b> {_mxn(payload.get("total_invoice"))}</p>
    <p>{status}</p>
    """
    return _text(payload.get("to_email")), f"{COMPANY_NAME} - Recibo de pago {folio}", html


def render_service_report(payload: Dict[str, Any]) -> Tuple[str, str, str]:
    report = payload.get("reportData") or {}
    rows = "".join(
        f"<tr><td>{_text(m.get('name'))}</td><td>{_text(m.get('quantity'))}</td>"
        f"<td>{_mxn(m.get('unit_cost'))}</td><td>{_mxn(m.get('total_cost'))}</td></tr>"
        for m in report.get("materials_used") or []
    )
    number = _text(report.get("report_number"))

    html = f"""
    <p>Hola {_text(payload.get("customerName")) or "Cliente"},</p>
    <p>Adjuntamos el reporte del servicio <b>{number}</b> realizado el {_text(report.get("service_date"))}.</p>
    <p>{_text(report.get("service_description"))}</p>
    <table>
      <tr><th>Material</th><th>Cantidad</th><th>Precio</th><th>Total</th></tr>
      {rows}
    </table>
    <p><b>Mano de obra:</b> {_mxn(report.get("labor_cost"))}<br>
    <b>Materiales:</b> {_mxn(report.get("materials_cost"))}<br>
    <b>Total:</b> {_mxn(report.get("total_cost"))}</p>
    """
    return _text(payload.get("customerEmail")), f"{COMPANY_NAME} - Reporte de servicio {number}", html


def render_digital_card(payload: Dict[str, Any]) -> Tuple[str, str, str]:
    html = f"""
    <p>Hola {_text(payload.get("customerName")) or "Cliente"},</p>
    <p>Esta es tu tarjeta digital <b>{_text(payload.get("cardNumber"))}</b>.</p>
    <p>Preséntala a nuestro técnico para obtener tu descuento en equipos.</p>
    """
    return _text(payload.get("customerEmail")), f"Tu Tarjeta Digital - {COMPANY_NAME}", html


TEMPLATES: Dict[str, Callable[[Dict[str, Any]], Tuple[str, str, str]]] = {
    PAYMENT_RECEIPT: render_payment_receipt,
    SERVICE_REPORT: render_service_report,
    DIGITAL_CARD: render_digital_card,
}


# ----------------------------
# Gateways
# ----------------------------
class NotificationGateway:
    """Named remote notification; returns True when something was sent."""

    def invoke(self, name: str, payload: Dict[str, Any]) -> bool:
        raise NotImplementedError


class SupabaseFunctionGateway(NotificationGateway):
    """Calls the Supabase Edge Function with the same name."""

    def __init__(self, client: Client):
        self.client = client

    def invoke(self, name: str, payload: Dict[str, Any]) -> bool:
        try:
            self.client.functions.invoke(name, invoke_options={"body": payload})
        except Exception as e:
            raise NotificationError(f"{name} failed: {e}") from e
        return True


class SendGridMailer(NotificationGateway):
    """Renders the notification locally and e-mails it through SendGrid."""

    def __init__(self, api_key: str, from_email: str):
        self.api_key = api_key
        self.from_email = from_email

    def invoke(self, name: str, payload: Dict[str, Any]) -> bool:
        render = TEMPLATES.get(name)
        if render is None:
            raise NotificationError(f"unknown notification: {name}")

        to_email, subject, html = render(payload)
        if not to_email:
            raise NotificationError(f"{name}: missing recipient")

        # Allow running without email configured
        if not self.api_key:
            logger.info("SENDGRID_API_KEY not set; skipping %s to %s", name, to_email)
            return False

        msg = Mail(
            from_email=self.from_email,
            to_emails=to_email,
            subject=subject,
            html_content=html,
        )
        try:
            SendGridAPIClient(self.api_key).send(msg)
        except Exception as e:
            raise NotificationError(f"{name} to {to_email} failed: {e}") from e

        logger.info("Sent %s to %s", name, to_email)
        return True


def notify(gateway: Optional[NotificationGateway], name: str, payload: Dict[str, Any]) -> bool:
    """Best-effort delivery: failures are logged, never raised."""
    if gateway is None:
        logger.info("No notification gateway configured; skipping %s", name)
        return False
    try:
        return gateway.invoke(name, payload)
    except NotificationError:
        logger.warning("Notification %s failed", name, exc_info=True)
        return False


def gateway_from_env() -> Optional[NotificationGateway]:
    sendgrid_key = os.environ.get("SENDGRID_API_KEY", "")
    if sendgrid_key:
        return SendGridMailer(sendgrid_key, os.environ.get("FROM_EMAIL", "facturacion@alarmas-adz.com"))

    supabase_url = (os.environ.get("SUPABASE_URL") or "").strip()
    supabase_key = (
        os.environ.get("SUPABASE_SERVICE_KEY") or os.environ.get("SUPABASE_ANON_KEY") or ""
    ).strip()
    if supabase_url and supabase_key:
        return SupabaseFunctionGateway(create_client(supabase_url, supabase_key))

    return None
