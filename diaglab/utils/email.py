import emails
from emails.template import JinjaTemplate

from diaglab.config import settings
from diaglab.utils.logger import get_logger
from diaglab.utils.helpers import mask_email
from diaglab.exceptions import EmailError, handle_email_error

logger = get_logger("email")

OTP_SUBJECTS = {
    "email_verification": "Verify Your NVHealth Labs Account",
    "password_reset": "Password Reset Verification",
    "login_2fa": "Login Verification Code",
}

OTP_TEMPLATES = {
    "email_verification": """
        <html>
        <body>
            <h2>Verify Your Account</h2>
            <p>Hi {{ name }},</p>
            <p>Your verification code is: <strong>{{ otp_code }}</strong></p>
            <p>This code will expire in {{ expiry_minutes }} minutes.</p>
            <p>If you didn't request this, please ignore this email.</p>
        </body>
        </html>
        """,
    "password_reset": """
        <html>
        <body>
            <h2>Password Reset</h2>
            <p>Hi {{ name }},</p>
            <p>Your password reset code is: <strong>{{ otp_code }}</strong></p>
            <p>This code will expire in {{ expiry_minutes }} minutes.</p>
            <p>If you didn't request this, please secure your account immediately.</p>
        </body>
        </html>
        """,
    "login_2fa": """
        <html>
        <body>
            <h2>Login Verification</h2>
            <p>Hi {{ name }},</p>
            <p>Your login verification code is: <strong>{{ otp_code }}</strong></p>
            <p>This code will expire in {{ expiry_minutes }} minutes.</p>
            <p>If you didn't try to log in, please secure your account.</p>
        </body>
        </html>
        """,
}


def send_email(
    email_to: str,
    subject: str = "",
    html_content: str = None,
    template_name: str = None,
    environment: dict = None,
) -> bool:
    """
    Send email with either direct HTML content or a template

    Args:
        email_to: Recipient email address
        subject: Email subject
        html_content: Direct HTML content
        template_name: Template string to render
        environment: Template variables

    Returns:
        bool: True if email sent successfully

    Raises:
        EmailError: If email configuration is missing or sending fails
    """
    required_settings = {
        "SMTP_HOST": settings.SMTP_HOST,
        "SMTP_PORT": settings.SMTP_PORT,
        "SMTP_USER": settings.SMTP_USER,
        "SMTP_PASSWORD": settings.SMTP_PASSWORD,
        "EMAILS_FROM": settings.EMAILS_FROM,
    }

    if not all(required_settings.values()):
        error_msg = "Email configuration not set - skipping email sending"
        logger.warning(error_msg)
        raise EmailError(
            message=error_msg,
            details={"missing_settings": [name for name, value in required_settings.items() if not value]}
        )

    try:
        if html_content:
            message = emails.Message(
                mail_from=settings.EMAILS_FROM,
                subject=subject,
                html=html_content,
            )
        elif template_name:
            message = emails.Message(
                mail_from=settings.EMAILS_FROM,
                subject=subject,
                html=JinjaTemplate(template_name).render(**(environment or {})),
            )
        else:
            raise ValueError("Either html_content or template_name must be provided")
    except Exception as e:
        raise handle_email_error(e, "create email message")

    smtp_options = {
        "host": settings.SMTP_HOST,
        "port": settings.SMTP_PORT,
        "user": settings.SMTP_USER,
        "password": settings.SMTP_PASSWORD,
        "timeout": settings.SMTP_TIMEOUT,
    }

    if settings.SMTP_TLS:
        smtp_options["tls"] = True
    if settings.SMTP_SSL:
        smtp_options["ssl"] = True

    try:
        logger.info(f"Sending email to {mask_email(email_to)} with subject: {subject}")
        response = message.send(to=email_to, smtp=smtp_options)
    except Exception as e:
        raise handle_email_error(e, "send email")

    if response.success:
        logger.info(f"Email sent successfully to {mask_email(email_to)}")
        return True

    logger.error(f"Failed to send email to {mask_email(email_to)}: {response.error}")
    raise EmailError(
        message="Failed to send email",
        details={"recipient": mask_email(email_to), "subject": subject, "original_error": str(response.error)}
    )


def send_otp_email(email_to: str, name: str, otp_code: str, purpose: str, expiry_minutes: int = 15) -> bool:
    """
    Send a one-time code by email

    Args:
        email_to: Recipient email address
        name: Greeting name
        otp_code: Plain one-time code
        purpose: Purpose of the code (email_verification, password_reset, login_2fa)
        expiry_minutes: Lifetime shown to the recipient

    Returns:
        bool: True if the message was accepted by the SMTP server, False otherwise
    """
    subject = OTP_SUBJECTS.get(purpose, "Verification Code")
    template = OTP_TEMPLATES.get(
        purpose,
        "<html><body><p>Your verification code is: <strong>{{ otp_code }}</strong></p></body></html>"
    )

    try:
        logger.info(f"Sending OTP email to {mask_email(email_to)} for purpose: {purpose}")
        return send_email(
            email_to=email_to,
            subject=subject,
            template_name=template,
            environment={"otp_code": otp_code, "name": name, "expiry_minutes": expiry_minutes},
        )
    except EmailError as e:
        logger.error(f"Failed to send OTP email to {mask_email(email_to)}: {e.message}")
        return False


def get_otp_sender():
    """Dependency returning the callable used to deliver one-time codes"""
    return send_otp_email
