"""
Notification services for the registration engine
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional
import httpx

from .models import (
    AssistanceRequest,
    AttemptRecord,
    NotificationPayload,
    NotificationResult,
    Priority,
    RegistrationPlan,
)
from .config import NotificationsConfig
from .interfaces import Notifier

logger = logging.getLogger(__name__)


class NotificationProvider(ABC):
    """Base class for notification providers"""

    @abstractmethod
    async def send(self, payload: NotificationPayload) -> bool:
        """Send notification, return True if successful"""
        pass


class EmailNotifier(NotificationProvider):
    """SendGrid email notifications"""

    def __init__(self, api_key: str, to_address: str, from_address: str = "noreply@camprush.local"):
        self.api_key = api_key
        self.to_address = to_address
        self.from_address = from_address
        self.client = httpx.AsyncClient()

    async def send(self, payload: NotificationPayload) -> bool:
        try:
            response = await self.client.post(
                "https://api.sendgrid.com/v3/mail/send",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json"
                },
                json={
                    "personalizations": [{"to": [{"email": self.to_address}]}],
                    "from": {"email": self.from_address, "name": "CampRush"},
                    "subject": payload.title,
                    "content": [
                        {
                            "type": "text/html",
                            "value": self._format_html(payload)
                        }
                    ]
                }
            )
            success = response.status_code in (200, 202)
            if not success:
                logger.error(f"Email send failed: {response.status_code} - {response.text}")
            return success
        except Exception as e:
            logger.error(f"Email send error: {e}")
            return False

    def _format_html(self, payload: NotificationPayload) -> str:
        color = "#ef4444" if payload.urgency == Priority.HIGH else "#2563eb"
        body = payload.message.replace("\n", "<br>")
        html = f"""
        <html>
        <body style="font-family: Arial, sans-serif; padding: 20px;">
            <h1 style="color: {color};">{payload.title}</h1>
            <p style="font-size: 16px;">{body}</p>
        """
        if payload.url:
            html += f"""
            <p style="margin-top: 20px;">
                <a href="{payload.url}"
                   style="background: #2563eb; color: white; padding: 12px 24px;
                          text-decoration: none; border-radius: 6px; font-weight: bold;">
                    Open Registration →
                </a>
            </p>
            """
        html += """
        </body>
        </html>
        """
        return html


class SMSNotifier(NotificationProvider):
    """Twilio SMS notifications"""

    def __init__(self, account_sid: str, auth_token: str, from_number: str, to_number: str):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.to_number = to_number
        self.client = httpx.AsyncClient()

    async def send(self, payload: NotificationPayload) -> bool:
        try:
            response = await self.client.post(
                f"https://api.twilio.com/2010-04-01/Accounts/{self.account_sid}/Messages.json",
                auth=(self.account_sid, self.auth_token),
                data={
                    "From": self.from_number,
                    "To": self.to_number,
                    "Body": self._format_sms(payload)
                }
            )
            success = response.status_code == 201
            if not success:
                logger.error(f"SMS send failed: {response.status_code} - {response.text}")
            return success
        except Exception as e:
            logger.error(f"SMS send error: {e}")
            return False

    def _format_sms(self, payload: NotificationPayload) -> str:
        msg = f"🏕️ {payload.title}\n\n{payload.message}"
        if payload.url:
            msg += f"\n\n{payload.url}"
        return msg[:1600]  # SMS length limit


class WebhookNotifier(NotificationProvider):
    """Generic webhook notifications (Slack, Discord, etc.)"""

    def __init__(self, webhook_url: str):
        self.webhook_url = webhook_url
        self.client = httpx.AsyncClient()

    async def send(self, payload: NotificationPayload) -> bool:
        try:
            # Format for Slack-compatible webhooks
            response = await self.client.post(
                self.webhook_url,
                json={
                    "text": payload.title,
                    "blocks": [
                        {
                            "type": "header",
                            "text": {"type": "plain_text", "text": payload.title}
                        },
                        {
                            "type": "section",
                            "text": {"type": "mrkdwn", "text": payload.message}
                        },
                        *([{
                            "type": "section",
                            "text": {
                                "type": "mrkdwn",
                                "text": f"<{payload.url}|Open Registration →>"
                            }
                        }] if payload.url else [])
                    ]
                }
            )
            return response.status_code == 200
        except Exception as e:
            logger.error(f"Webhook send error: {e}")
            return False


class ConsoleNotifier(NotificationProvider):
    """Console output for local runs and testing"""

    async def send(self, payload: NotificationPayload) -> bool:
        print("\n" + "=" * 60)
        print(f"📢 {payload.title}")
        print("-" * 60)
        print(payload.message)
        if payload.url:
            print(f"\n🔗 {payload.url}")
        print("=" * 60 + "\n")
        return True


class NotificationManager(Notifier):
    """Fans each notification out to every configured provider"""

    def __init__(self, config: NotificationsConfig):
        self.providers: list[NotificationProvider] = []

        if config.console:
            self.providers.append(ConsoleNotifier())

        if config.email.enabled and config.email.sendgrid_api_key and config.email.address:
            self.providers.append(EmailNotifier(
                api_key=config.email.sendgrid_api_key,
                to_address=config.email.address
            ))
            logger.info("Email notifications enabled")
        elif config.email.enabled:
            logger.warning("Email notifications enabled but missing address or API key")

        if (
            config.sms.enabled
            and config.sms.twilio_account_sid
            and config.sms.twilio_auth_token
            and config.sms.twilio_from_number
            and config.sms.phone
        ):
            self.providers.append(SMSNotifier(
                account_sid=config.sms.twilio_account_sid,
                auth_token=config.sms.twilio_auth_token,
                from_number=config.sms.twilio_from_number,
                to_number=config.sms.phone
            ))
            logger.info("SMS notifications enabled")
        elif config.sms.enabled:
            logger.warning("SMS notifications enabled but missing Twilio config")

        if config.webhook.enabled and config.webhook.url:
            self.providers.append(WebhookNotifier(config.webhook.url))
            logger.info("Webhook notifications enabled")
        elif config.webhook.enabled:
            logger.warning("Webhook notifications enabled but missing URL")

    async def notify(self, user_id: str, message: str, priority: Priority) -> NotificationResult:
        title, _, body = message.partition("\n\n")
        payload = NotificationPayload(
            title=title,
            message=body or title,
            user_id=user_id,
            urgency=priority,
        )
        return await self.send(payload)

    async def send(self, payload: NotificationPayload) -> NotificationResult:
        """Send notification through all providers"""
        results = await asyncio.gather(
            *[p.send(payload) for p in self.providers],
            return_exceptions=True
        )

        success_count = sum(1 for r in results if r is True)
        logger.info(f"Notifications sent: {success_count}/{len(self.providers)} successful")
        return NotificationResult(delivered=success_count > 0, channels=success_count)

    async def aclose(self):
        for provider in self.providers:
            client: Optional[httpx.AsyncClient] = getattr(provider, "client", None)
            if client is not None:
                await client.aclose()


def format_assistance_message(request: AssistanceRequest) -> str:
    """Message asking the parent to handle an assistance request"""
    what = {
        "captcha": "Solve a CAPTCHA so registration can continue.",
        "account_creation": "Log in or create the provider account.",
        "payment": "Enter payment details to finish registration.",
        "form_completion": "Finish a registration form step.",
    }[request.type.value]
    return (
        f"🤖 Your help is needed: {request.stage}\n\n"
        f"{what}\n"
        f"Estimated time: {request.estimated_duration} min"
    )


def format_success_message(plan: RegistrationPlan, record: AttemptRecord) -> str:
    return (
        f"🎉 REGISTRATION SUBMITTED!\n\n"
        f"Session: {plan.session_id}\n"
        f"Confirmation: {record.confirmation_id or 'pending'}\n"
        f"Attempt: #{record.attempt_number}"
    )


def format_failure_message(plan: RegistrationPlan, reason: str) -> str:
    return (
        f"❌ Registration Failed\n\n"
        f"Session: {plan.session_id}\n"
        f"Reason: {reason}"
    )
