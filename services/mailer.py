import os
import ssl
import smtplib
import logging
from datetime import datetime, timedelta

from dotenv import load_dotenv

from models import db, EmailQueue

load_dotenv()

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv('SMTP_HOST')
SMTP_PORT = int(os.getenv('SMTP_PORT', 587))
SMTP_USER = os.getenv('SMTP_USER')
SMTP_PASS = os.getenv('SMTP_PASS')
SMTP_FROM = os.getenv('SMTP_FROM')


def send_email(to_email, subject, body):
    """Send through SMTP when configured, otherwise log a mock send."""
    if SMTP_HOST and SMTP_FROM:
        try:
            msg = f"From: {SMTP_FROM}\r\nTo: {to_email}\r\nSubject: {subject}\r\n\r\n{body}"
            context = ssl.create_default_context()
            with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=10) as server:
                server.ehlo()
                try:
                    server.starttls(context=context)
                    server.ehlo()
                except smtplib.SMTPException:
                    logger.warning("STARTTLS not available; sending without TLS")
                if SMTP_USER and SMTP_PASS:
                    server.login(SMTP_USER, SMTP_PASS)
                server.sendmail(SMTP_FROM, [to_email] if to_email else [SMTP_FROM], msg)
            logger.info(f"[SMTP EMAIL] To={to_email or 'n/a'} | Subject={subject}")
            return 'smtp'
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send failed: {str(e)}; falling back to mock.")
    logger.info(f"[MOCK EMAIL] To={to_email or 'n/a'} | Subject={subject} | Body={body}")
    return 'mock'


def queue_email(firm_id, to, subject, body, delay_minutes=0, case_id=None, source=None):
    """Add an email to the outbound queue; the caller commits."""
    item = EmailQueue(
        firm_id=firm_id,
        case_id=case_id,
        to=to,
        subject=subject,
        body=body,
        send_after=datetime.utcnow() + timedelta(minutes=delay_minutes or 0),
        status='pending',
        attempts=0,
        source=source,
    )
    db.session.add(item)
    return item


def process_email_queue(limit=25, now=None):
    """Send due queue items. Returns (sent, failed) counts."""
    now = now or datetime.utcnow()
    items = (
        db.session.query(EmailQueue)
        .filter(EmailQueue.status == 'pending')
        .filter(EmailQueue.send_after <= now)
        .order_by(EmailQueue.created_at.asc())
        .limit(limit)
        .all()
    )
    sent = failed = 0
    for item in items:
        item.attempts = (item.attempts or 0) + 1
        try:
            send_email(item.to, item.subject, item.body)
            item.status = 'sent'
            item.last_error = None
            sent += 1
        except Exception as e:
            item.status = 'failed'
            item.last_error = str(e)
            failed += 1
            logger.error(f"Email queue item {item.id} failed: {e}")
        db.session.add(item)
        db.session.commit()
    return sent, failed
