import markdown
from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import get_template

HEADER = """
    <div class="email-header">
      <h2 style="font-family: sans-serif;">Speleo Club</h2>
    </div>
"""

FOOTER = """
    <div class="footer" style="font-family: sans-serif; color: #666;">
      <p>
        You receive this email because you hold club material on loan.
        Manage your loans from your club account.
      </p>
    </div>
"""


def send_email_message(template_name, from_, to, context, subject=None, reply_to=None):
    """
    Render ``email/<template_name>/subject.txt`` and ``body.txt`` with
    ``context`` and send them to ``to``.

    The body is markdown: it is sent as is for the plain text part and
    rendered for the HTML alternative. ``from_`` None means
    DEFAULT_FROM_EMAIL. Blank addresses are dropped; nothing is sent
    when none are left.
    """
    to = [address for address in to if address]
    if not to:
        return

    if from_ is None:
        from_ = settings.DEFAULT_FROM_EMAIL

    if subject is None:
        subject = get_template(f"email/{template_name}/subject.txt").render(context)
    subject = " ".join(subject.splitlines()).strip()

    if getattr(settings, "EMAIL_SUBJECT_PREFIX", None):
        subject = f"{settings.EMAIL_SUBJECT_PREFIX} {subject}"

    message = get_template(f"email/{template_name}/body.txt").render(context)
    html = HEADER + '<div class="content">' + markdown.markdown(message) + "</div>" + FOOTER

    mail = EmailMultiAlternatives(subject, message, from_, to, reply_to=reply_to)
    mail.attach_alternative(html, "text/html")
    mail.send()
