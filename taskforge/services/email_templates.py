from html import escape
from urllib.parse import quote, urlencode

from ..config import app_name, frontend_app_url


def verification_link(email: str) -> str:
    return f"{frontend_app_url()}/verify?{urlencode({'email': email})}"


def reset_password_link(token: str) -> str:
    return f"{frontend_app_url()}/reset-password/{quote(token, safe='')}"


def _wrap_html(inner: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; background-color: #f4f4f4; padding: 20px;">'
        '<div style="max-width: 600px; margin: auto; background: #ffffff; padding: 30px; '
        'border-radius: 10px;">'
        f"{inner}"
        "</div></div>"
    )


def _button(href: str, label: str) -> str:
    return (
        '<p style="text-align: center; margin: 30px 0;">'
        f'<a href="{escape(href)}" style="background-color: #4CAF50; color: #ffffff; '
        'padding: 12px 25px; border-radius: 5px; text-decoration: none;">'
        f"{label}</a></p>"
    )


def _code_block(code: str) -> str:
    return (
        '<p style="text-align: center; font-size: 20px; font-weight: bold; margin: 15px 0;">'
        f"{escape(code)}</p>"
    )


def build_registration_email(name: str, email: str, code: str) -> tuple[str, str, str]:
    brand = app_name()
    link = verification_link(email)
    subject = "Confirm Your Email to Get Started"
    text = (
        f"Hi {name},\n\n"
        "Thanks for signing up! Verify your email here:\n"
        f"{link}\n\n"
        f"Your verification code is {code}. It is valid for the next 5 minutes.\n\n"
        f"Welcome aboard,\n{brand} Team"
    )
    html = _wrap_html(
        f"<p>Hi {escape(name)},</p>"
        "<p>Thanks for signing up! You're almost ready to get started.</p>"
        "<p>Click the link below to verify your email:</p>"
        f"{_button(link, 'Verify Email')}"
        "<p>Please enter this OTP on the verification page to complete your verification:</p>"
        f"{_code_block(code)}"
        "<p>This OTP is valid for the next 5 minutes.</p>"
        f"<p>Welcome aboard,<br><strong>{escape(brand)} Team</strong></p>"
    )
    return subject, text, html


def build_resend_otp_email(name: str, code: str) -> tuple[str, str, str]:
    brand = app_name()
    subject = "Your OTP for Email Verification"
    text = (
        f"Hi {name},\n\n"
        f"Your new verification code is {code}. It is valid for the next 5 minutes.\n\n"
        "If you didn't request this, you can safely ignore this email.\n\n"
        f"{brand} Team"
    )
    html = _wrap_html(
        "<h2>Your New Verification Code</h2>"
        f"<p>Hi {escape(name)},</p>"
        "<p>Please enter this OTP on the verification page to verify your email:</p>"
        f"{_code_block(code)}"
        "<p>This OTP is valid for the next 5 minutes.</p>"
        "<p>If you didn't request this, you can safely ignore this email.</p>"
        f"<p><strong>{escape(brand)} Team</strong></p>"
    )
    return subject, text, html


def build_legacy_verification_email(name: str, email: str, code: str) -> tuple[str, str, str]:
    brand = app_name()
    link = verification_link(email)
    subject = "Verify Your Email Account"
    text = (
        f"Hi {name},\n\n"
        "We noticed you haven't verified your email yet. Verify it here:\n"
        f"{link}\n\n"
        f"Enter this OTP to verify: {code}. It is valid for the next 5 minutes.\n\n"
        f"Best regards,\n{brand} Team"
    )
    html = _wrap_html(
        f"<p>Hi {escape(name)},</p>"
        "<p>We noticed you haven't verified your email yet. Click the button below to verify.</p>"
        f"{_button(link, 'Verify Email')}"
        f"<p>Enter this OTP to verify: <strong>{escape(code)}</strong></p>"
        "<p>This OTP is valid for the next 5 minutes.</p>"
        f"<p>Best regards,<br><strong>{escape(brand)} Team</strong></p>"
    )
    return subject, text, html


def build_password_reset_email(name: str, token: str) -> tuple[str, str, str]:
    brand = app_name()
    link = reset_password_link(token)
    subject = "Password Reset Request"
    text = (
        f"Hi {name},\n\n"
        "We received a request to reset your password. Set a new one here:\n"
        f"{link}\n\n"
        "This link is valid for 5 minutes. If you did not request this, you can ignore this email.\n\n"
        f"Best regards,\n{brand} Team"
    )
    html = _wrap_html(
        f"<p>Hi {escape(name)},</p>"
        "<p>We received a request to reset your password. "
        "Click the button below to securely set a new password:</p>"
        f"{_button(link, 'Reset Password')}"
        "<p>This link is valid for 5 minutes.</p>"
        "<p>If you didn't request a password reset, you can safely ignore this email.</p>"
        f"<p>Best regards,<br><strong>{escape(brand)} Team</strong></p>"
    )
    return subject, text, html
