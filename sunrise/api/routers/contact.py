from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from sunrise.api.context import get_route_logger
from sunrise.api.deps import get_db, get_email_service, get_ip, get_settings, rate_limit
from sunrise.api.responses import success_response
from sunrise.api.schemas import ContactRequest
from sunrise.core.logging import StructuredLogger
from sunrise.core.settings import Settings
from sunrise.db.models import ContactSubmission, as_utc
from sunrise.services.email_service import EmailService
from sunrise.services.email_templates import contact_notification_html
from sunrise.services.rate_limiter import RateLimitResult

router = APIRouter(prefix="/api/v1/contact", tags=["contact"])

THANK_YOU = "Thank you for your message. We will get back to you soon."


def _notify(email: EmailService, log: StructuredLogger, *, to: str, submission: ContactSubmission) -> None:
    try:
        result = email.send_email(
            to=to,
            subject=f"[Sunrise Contact] {submission.subject}",
            html=contact_notification_html(
                name=submission.name,
                email=submission.email,
                subject=submission.subject,
                message=submission.message,
                submitted_at=as_utc(submission.created_at),
            ),
            reply_to=submission.email,
        )
    except Exception as e:
        log.error("Error sending contact notification email", e, {"submissionId": submission.id})
        return
    if result.success:
        log.info("Contact notification email sent", {"submissionId": submission.id, "emailId": result.id})
    else:
        log.warn("Failed to send contact notification email", {"submissionId": submission.id, "error": result.error})


@router.post("")
def submit_contact(
    req: ContactRequest,
    request: Request,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    email: EmailService = Depends(get_email_service),
    settings: Settings = Depends(get_settings),
    limit: RateLimitResult = Depends(rate_limit("contact")),
):
    log = get_route_logger(request)

    if req.website:
        # Bots fill every field; answer as if it worked.
        log.warn("Contact form honeypot triggered", {"ip": get_ip(request), "email": req.email})
        return success_response({"message": THANK_YOU}, headers=limit.headers())

    submission = ContactSubmission(name=req.name, email=req.email, subject=req.subject, message=req.message)
    db.add(submission)
    db.commit()
    db.refresh(submission)
    log.info("Contact form submission created", {"id": submission.id, "email": req.email, "subject": req.subject})

    admin_email = settings.contact_email or settings.email_from
    if not admin_email:
        log.warn("No CONTACT_EMAIL or EMAIL_FROM configured, skipping notification", {"submissionId": submission.id})
    else:
        background.add_task(_notify, email, log, to=admin_email, submission=submission)

    return success_response({"message": THANK_YOU}, headers=limit.headers())
