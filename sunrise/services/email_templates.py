from __future__ import annotations

import datetime as dt

from sunrise.security.sanitize import escape_html

APP_NAME = "Sunrise"


def _format_ts(value: dt.datetime) -> str:
    return value.strftime("%B %d, %Y at %H:%M %Z").strip()


def _layout(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html><html lang=\"en\"><head><meta charset=\"utf-8\">"
        f"<title>{escape_html(title)}</title></head>"
        "<body style=\"background-color:#f6f9fc;font-family:-apple-system,'Segoe UI',Roboto,Arial,sans-serif\">"
        f"<div style=\"margin:0 auto;padding:20px 0 48px;max-width:560px\">{body}</div>"
        "</body></html>"
    )


def _button(url: str, label: str) -> str:
    return (
        f"<p><a href=\"{escape_html(url)}\" "
        "style=\"background-color:#000;color:#fff;padding:12px 20px;border-radius:4px;text-decoration:none\">"
        f"{escape_html(label)}</a></p>"
    )


def verify_email_html(*, user_name: str, verification_url: str, expires_at: dt.datetime) -> str:
    body = (
        f"<h1>Verify your email</h1>"
        f"<p>Hi {escape_html(user_name)},</p>"
        f"<p>Thanks for signing up! To complete your registration and start using {APP_NAME}, "
        "please verify your email address by clicking the button below.</p>"
        f"{_button(verification_url, 'Verify Email')}"
        f"<p>This link expires on {escape_html(_format_ts(expires_at))}. For your security, "
        "this link can only be used once.</p>"
        "<p>If you didn't request this verification email, you can safely ignore it.</p>"
    )
    return _layout("Verify your email", body)


def invitation_html(
    *,
    inviter_name: str,
    invitee_name: str,
    invitee_email: str,
    invitation_url: str,
    expires_at: dt.datetime,
) -> str:
    body = (
        f"<h1>You've been invited to join {APP_NAME}</h1>"
        f"<p>Hi {escape_html(invitee_name)},</p>"
        f"<p><strong>{escape_html(inviter_name)}</strong> has invited you to join "
        f"<strong>{APP_NAME}</strong>. We're excited to have you on board!</p>"
        f"<p><strong>Your Account:</strong><br>{escape_html(invitee_email)}</p>"
        "<p>Click the button below to accept your invitation and set up your password:</p>"
        f"{_button(invitation_url, 'Accept Invitation')}"
        f"<p>This invitation will expire on {escape_html(_format_ts(expires_at))}.</p>"
        "<p>If you weren't expecting this invitation or don't want to join, you can safely ignore this email.</p>"
    )
    return _layout(f"You've been invited to join {APP_NAME}", body)


def contact_notification_html(
    *,
    name: str,
    email: str,
    subject: str,
    message: str,
    submitted_at: dt.datetime,
) -> str:
    body = (
        "<h1>New contact form submission</h1>"
        "<p>You have received a new message from your website contact form.</p>"
        f"<p><strong>From:</strong> {escape_html(name)} ({escape_html(email)})</p>"
        f"<p><strong>Subject:</strong> {escape_html(subject)}</p>"
        f"<p><strong>Submitted:</strong> {escape_html(_format_ts(submitted_at))}</p>"
        f"<p style=\"white-space:pre-wrap\">{escape_html(message)}</p>"
    )
    return _layout("New contact form submission", body)


def reset_password_html(*, user_name: str, reset_url: str, expires_at: dt.datetime) -> str:
    body = (
        "<h1>Reset Your Password</h1>"
        f"<p>Hi {escape_html(user_name)},</p>"
        "<p>We received a request to reset the password for your account. "
        "Click the button below to create a new password:</p>"
        f"{_button(reset_url, 'Reset Password')}"
        f"<p>This link will expire on {escape_html(_format_ts(expires_at))}. "
        "If you didn't request a password reset, you can safely ignore this email.</p>"
        "<p><strong>Security Notice:</strong> Never share this link with anyone.</p>"
        f"<p>If the button doesn't work, copy and paste this link into your browser:<br>{escape_html(reset_url)}</p>"
    )
    return _layout("Reset your password", body)
