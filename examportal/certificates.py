import secrets
import smtplib
from datetime import datetime
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from io import BytesIO

from flask import current_app
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from .models import ATTEMPT_SUBMITTED, ExamAttempt, db


def render_certificate_pdf(attempt) -> bytes:
    student = attempt.student
    exam = attempt.exam

    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=landscape(A4))
    width, height = landscape(A4)

    c.setLineWidth(2)
    c.rect(12 * mm, 12 * mm, width - 24 * mm, height - 24 * mm)

    y = height - 45 * mm
    c.setFont('Helvetica-Bold', 28)
    c.drawCentredString(width / 2, y, 'Certificate of Completion')
    y -= 20 * mm

    c.setFont('Helvetica', 13)
    c.drawCentredString(width / 2, y, 'This is to certify that')
    y -= 14 * mm

    c.setFont('Helvetica-Bold', 22)
    c.drawCentredString(width / 2, y, (student.name or student.email) if student else '')
    y -= 14 * mm

    c.setFont('Helvetica', 13)
    c.drawCentredString(width / 2, y, 'has successfully passed the examination')
    y -= 12 * mm

    c.setFont('Helvetica-Bold', 16)
    c.drawCentredString(width / 2, y, exam.name if exam else 'Exam')
    y -= 12 * mm

    c.setFont('Helvetica', 12)
    percent = float(attempt.percentage or 0.0)
    c.drawCentredString(width / 2, y, f"Score: {attempt.score}/{attempt.total_questions} ({percent:.2f}%)")
    y -= 8 * mm

    issued = attempt.certificate_issued_at or attempt.end_time
    c.drawCentredString(width / 2, y, f"Date: {issued.strftime('%Y-%m-%d') if issued else ''}")

    c.setFont('Helvetica', 9)
    c.drawString(18 * mm, 18 * mm, f"Certificate ID: {attempt.certificate_id or ''}")

    c.showPage()
    c.save()

    pdf = buf.getvalue()
    buf.close()
    return pdf


def send_certificate_email(to_email: str, subject: str, body: str, pdf: bytes, filename: str) -> bool:
    """Send the certificate via SMTP. Returns False when SMTP is not configured or delivery fails."""
    cfg = current_app.config
    host = cfg.get('SMTP_HOST')
    port = cfg.get('SMTP_PORT')
    user = cfg.get('SMTP_USER')
    password = cfg.get('SMTP_PASS')
    from_email = cfg.get('SMTP_FROM') or user

    if not host or not port or not user or not password or not from_email:
        current_app.logger.info('SMTP not configured; certificate for %s kept for later delivery', to_email)
        return False

    msg = MIMEMultipart()
    msg['Subject'] = subject
    msg['From'] = from_email
    msg['To'] = to_email
    msg.attach(MIMEText(body, 'plain', 'utf-8'))
    attachment = MIMEApplication(pdf, _subtype='pdf')
    attachment.add_header('Content-Disposition', 'attachment', filename=filename)
    msg.attach(attachment)

    try:
        with smtplib.SMTP(host, int(port)) as server:
            server.starttls()
            server.login(user, password)
            server.sendmail(from_email, [to_email], msg.as_string())
    except (smtplib.SMTPException, OSError) as e:
        current_app.logger.warning('Certificate email to %s failed: %s', to_email, e)
        return False
    return True


def issue_certificate(attempt_id, now=None):
    """Assign a certificate to a passed attempt (once) and try to email it."""
    attempt = db.session.get(ExamAttempt, attempt_id)
    if not attempt or attempt.status != ATTEMPT_SUBMITTED or not attempt.passed:
        return None

    if not attempt.certificate_id:
        attempt.certificate_id = f"CERT-{attempt.id:06d}-{secrets.token_hex(4).upper()}"
        attempt.certificate_issued_at = now or datetime.utcnow()
        db.session.commit()
        current_app.logger.info('Issued certificate %s for attempt %s', attempt.certificate_id, attempt.id)

    if attempt.certificate_email_sent or attempt.student is None:
        return attempt

    exam_name = attempt.exam.name if attempt.exam else 'Exam'
    pdf = render_certificate_pdf(attempt)
    sent = send_certificate_email(
        attempt.student.email,
        f'Your certificate for {exam_name}',
        f"Congratulations {attempt.student.name or ''}!\n\n"
        f"You passed {exam_name} with {float(attempt.percentage or 0):.2f}%.\n"
        f"Your certificate ID is {attempt.certificate_id}.",
        pdf,
        f'certificate_{attempt.certificate_id}.pdf',
    )
    if sent:
        attempt.certificate_email_sent = True
        db.session.commit()
    return attempt


def _issue_safely(attempt_id):
    try:
        return issue_certificate(attempt_id)
    except Exception:
        db.session.rollback()
        current_app.logger.exception('Certificate issuance failed for attempt %s', attempt_id)
        return None


def _issue_in_app_context(app, attempt_id):
    with app.app_context():
        _issue_safely(attempt_id)


def schedule_certificate(attempt_id):
    app = current_app._get_current_object()
    socketio = app.extensions.get('socketio')
    if app.config.get('CERTIFICATE_ASYNC') and socketio is not None:
        socketio.start_background_task(_issue_in_app_context, app, attempt_id)
    else:
        _issue_safely(attempt_id)


def retry_pending_certificates():
    pending = (
        ExamAttempt.query
        .filter_by(status=ATTEMPT_SUBMITTED, passed=True, certificate_email_sent=False)
        .all()
    )
    for attempt in pending:
        schedule_certificate(attempt.id)
    return len(pending)
