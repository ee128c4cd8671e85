from flask import current_app
from flask_mail import Message


def send_email(to_email, subject, body, html_body=None):
    """Send email using Flask-Mail. Returns False (and logs) when sending fails."""
    if not to_email:
        return False
    try:
        mail = current_app.mail
        msg = Message(
            subject=subject,
            recipients=[to_email],
            body=body,
            html=html_body
        )
        mail.send(msg)
    except Exception:
        current_app.logger.exception("Failed to send '%s' to %s", subject, to_email)
        return False
    current_app.logger.info("Sent '%s' to %s", subject, to_email)
    return True


def send_welcome_email(email, full_name, plan, end_date, password):
    """Login details for a newly registered member"""
    subject = "Welcome to the gym"
    body = f"""
    Dear {full_name},

    Your {plan} membership is ready and runs until {end_date}.

    You can log in with:
        Email: {email}
        Password: {password}

    Please change your password after your first login.

    Best regards,
    The Gym Team
    """

    html_body = f"""
    <html>
    <body>
        <h2>Welcome!</h2>
        <p>Dear <strong>{full_name}</strong>,</p>
        <p>Your <strong>{plan}</strong> membership is ready and runs until <strong>{end_date}</strong>.</p>
        <p>Email: <strong>{email}</strong><br>
        Password: <strong>{password}</strong></p>
        <p>Please change your password after your first login.</p>
        <p>Best regards,<br>
        <strong>The Gym Team</strong></p>
    </body>
    </html>
    """

    return send_email(email, subject, body, html_body)


def send_membership_expiry_reminder(email, full_name, expiry_date, days_remaining):
    """Send membership renewal reminder"""
    if days_remaining == 0:
        when = "today"
    else:
        when = f"in {days_remaining} day{'s' if days_remaining != 1 else ''}"
    subject = f"Membership expires {when}"
    body = f"""
    Dear {full_name},

    This is a friendly reminder that your gym membership expires on {expiry_date} ({when}).

    Please renew at the front desk to keep using the gym.

    Best regards,
    The Gym Team
    """

    html_body = f"""
    <html>
    <body style="font-family: Arial, sans-serif;">
        <h2>Membership Expiring Soon</h2>
        <p>Dear <strong>{full_name}</strong>,</p>
        <p>Your gym membership expires on <strong>{expiry_date}</strong> ({when}).</p>
        <p>Please renew at the front desk to keep using the gym.</p>
        <p>Best regards,<br>
        <strong>The Gym Team</strong></p>
    </body>
    </html>
    """

    return send_email(email, subject, body, html_body)
