"""
Outbound email

Messages go over SMTP when SMTP_HOST is set; otherwise they are written to
the log so local development never needs a mail server.
"""
import smtplib
from email.message import EmailMessage
from typing import Any, Dict

from config import settings
from logger import get_logger

log = get_logger("mailer")


class Mailer:
    def __init__(self, host=None, port: int = 587, user=None, password=None, sender: str = ""):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender

    def send(self, to: str, subject: str, body: str) -> None:
        if not self.host:
            log.info("Mail to %s (%s) not sent, SMTP is not configured:\n%s", to, subject, body)
            return
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password or "")
            smtp.send_message(message)
        log.info("Mail sent to %s: %s", to, subject)

    def send_order_confirmation(self, to: str, order: Dict[str, Any]) -> None:
        lines = [f"Thank you for your order {order['order_id']}.", "", "Items:"]
        for item in order.get("items", []):
            lines.append(f"  {item.get('name') or item['product_id']} ({item['color']}) x {item['quantity']} @ {item['price']}")
        lines += ["", f"Total paid: {order['total_price']}", f"Payment reference: {order['payment_id']}"]
        self.send(to, f"Order confirmation {order['order_id']}", "\n".join(lines))

    def send_verification_code(self, to: str, code: str) -> None:
        self.send(to, "Email Verification", f"Thanks for signing up! Your verification code is {code}.")

    def send_password_reset(self, to: str, link: str) -> None:
        self.send(
            to,
            "Password Reset Request",
            f"We received a request to reset your password. Open this link to choose a new one:\n{link}\n\n"
            "If you did not request this, please ignore this email.",
        )

    def send_welcome(self, to: str, name: str) -> None:
        self.send(to, "Welcome to our store!", f"Hi {name},\n\nWe're thrilled to have you on board.")


mailer = Mailer(
    host=settings.smtp_host,
    port=settings.smtp_port,
    user=settings.smtp_user,
    password=settings.smtp_password,
    sender=settings.mail_from,
)


def get_mailer() -> Mailer:
    return mailer
