"""
Notification Service
Fire-and-forget Brevo email notifications for ledger events.

Callers invoke these only after the ledger transaction has committed. Every
method swallows and logs its own failures: a notification can never roll back
or block a money movement.
"""

import logging
from typing import Optional, List, Dict, Any

import sib_api_v3_sdk
from sib_api_v3_sdk.rest import ApiException

from config import Config

logger = logging.getLogger(__name__)


def _naira(amount: int) -> str:
    """Kobo to a display string, e.g. 250000 → ₦2,500.00"""
    return f"₦{amount / 100:,.2f}"


class NotificationService:
    """Patient, center and operator notifications via Brevo transactional email"""

    def __init__(self, api_key: Optional[str] = None):
        api_key = api_key if api_key is not None else Config.BREVO_API_KEY
        self.sent: List[Dict[str, Any]] = []

        if not api_key or not Config.NOTIFICATIONS_ENABLED:
            logger.warning("BREVO_API_KEY not configured - ledger notifications will be skipped")
            self.api_client = None
            return

        configuration = sib_api_v3_sdk.Configuration()
        configuration.api_key["api-key"] = api_key
        self.api_client = sib_api_v3_sdk.ApiClient(configuration)
        self.transactional_emails_api = sib_api_v3_sdk.TransactionalEmailsApi(self.api_client)

    def send_email(self, to_email: Optional[str], subject: str, html_content: str, category: str) -> bool:
        """Send one email; returns False instead of raising on any failure"""
        if not to_email:
            logger.debug(f"📭 NOTIFY_SKIPPED: no recipient for {category}")
            return False

        self.sent.append({"to": to_email, "subject": subject, "category": category})

        if not self.api_client:
            logger.info(f"📭 NOTIFY_SKIPPED: email disabled ({category} → {to_email})")
            return False

        try:
            email = sib_api_v3_sdk.SendSmtpEmail(
                to=[{"email": to_email}],
                sender={"name": Config.FROM_NAME, "email": Config.FROM_EMAIL},
                subject=subject,
                html_content=html_content,
                tags=[category],
            )
            self.transactional_emails_api.send_transac_email(email)
            logger.info(f"📧 NOTIFY_SENT: {category} → {to_email}")
            return True
        except ApiException as e:
            logger.error(f"❌ NOTIFY_FAILED: Brevo API error for {category} → {to_email}: {e}")
            return False
        except Exception as e:
            logger.error(f"❌ NOTIFY_FAILED: unexpected error for {category} → {to_email}: {e}")
            return False

    def notify_patient_matched(self, patient_email: Optional[str], patient_name: str,
                               screening_name: str, amount: int, campaign_title: str) -> bool:
        subject = f"{Config.PLATFORM_NAME}: your {screening_name} screening is sponsored"
        html = (
            f"<p>Hello {patient_name},</p>"
            f"<p>Good news! <b>{campaign_title}</b> has reserved {_naira(amount)} for your "
            f"{screening_name} screening. Book an appointment within "
            f"{Config.ALLOCATION_GRACE_WINDOW_DAYS} days to use it.</p>"
        )
        return self.send_email(patient_email, subject, html, "patient_matched")

    def notify_allocation_expired(self, patient_email: Optional[str], patient_name: str,
                                  screening_name: str) -> bool:
        subject = f"{Config.PLATFORM_NAME}: your sponsored screening reservation expired"
        html = (
            f"<p>Hello {patient_name},</p>"
            f"<p>Your sponsored {screening_name} reservation expired before an appointment was booked. "
            f"You are back on the waitlist in your original position.</p>"
        )
        return self.send_email(patient_email, subject, html, "allocation_expired")

    def notify_appointment_completed(self, patient_email: Optional[str], patient_name: str,
                                     screening_name: str, center_name: str) -> bool:
        subject = f"{Config.PLATFORM_NAME}: screening completed"
        html = (
            f"<p>Hello {patient_name},</p>"
            f"<p>Your {screening_name} screening at {center_name} has been marked completed. "
            f"Thank you for looking after your health.</p>"
        )
        return self.send_email(patient_email, subject, html, "appointment_completed")

    def notify_payout_result(self, center_email: Optional[str], center_name: str, payout_number: str,
                             net_amount: int, succeeded: bool, failure_reason: Optional[str] = None) -> bool:
        if succeeded:
            subject = f"{Config.PLATFORM_NAME}: payout {payout_number} sent"
            html = (
                f"<p>Hello {center_name},</p>"
                f"<p>Payout {payout_number} of {_naira(net_amount)} has been transferred to your bank account.</p>"
            )
            return self.send_email(center_email, subject, html, "payout_success")

        subject = f"{Config.PLATFORM_NAME}: payout {payout_number} failed"
        html = (
            f"<p>Hello {center_name},</p>"
            f"<p>Payout {payout_number} of {_naira(net_amount)} could not be completed"
            f"{': ' + failure_reason if failure_reason else ''}. It will be retried.</p>"
        )
        return self.send_email(center_email, subject, html, "payout_failed")

    def alert_operators(self, title: str, details: Dict[str, Any]) -> bool:
        """Operator alert; logged at error level even when email is disabled"""
        logger.error(f"🚨 OPERATOR_ALERT: {title} {details}")
        rows = "".join(f"<li><b>{key}</b>: {value}</li>" for key, value in details.items())
        html = f"<p>{title}</p><ul>{rows}</ul>"
        return self.send_email(Config.ADMIN_EMAIL, f"[{Config.PLATFORM_NAME}] {title}", html, "operator_alert")
