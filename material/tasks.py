from celery import shared_task
from django.conf import settings
from django.urls import reverse

from configuration.utils import get_setting
from speleoclub.email import send_email_message


@shared_task
def notify_loan_created(loan_id):
    """Email the borrower of a new loan."""
    from material.models import Loan

    if not get_setting("notifications", "loan_email_enabled", False):
        return

    try:
        loan = Loan.objects.select_related("material", "user", "activity").get(id=loan_id)
    except Loan.DoesNotExist:
        return f"Loan {loan_id} not found"

    if not loan.user.email:
        return

    send_email_message(
        "loan_created",
        None,
        [loan.user.email],
        {
            "loan": loan,
            "my_loans_url": f"{settings.SITE_URL}{reverse('my_loans')}",
        },
    )


@shared_task
def send_overdue_reminders():
    """Remind every borrower with overdue loans, one email per borrower."""
    from material.models import Loan

    if not get_setting("notifications", "overdue_reminders_enabled", False):
        return

    _send_reminders(Loan.objects.overdue(), "loan_overdue")


@shared_task
def send_due_soon_reminders():
    from material.models import Loan

    if not get_setting("notifications", "overdue_reminders_enabled", False):
        return

    days = int(get_setting("notifications", "due_soon_days", 3))
    _send_reminders(Loan.objects.due_within(days), "loan_due_soon")


def _send_reminders(loans, template_name):
    by_user = {}
    for loan in loans.select_related("material", "user", "activity"):
        by_user.setdefault(loan.user, []).append(loan)

    for user, user_loans in by_user.items():
        if not user.email:
            continue
        send_email_message(
            template_name,
            None,
            [user.email],
            {
                "user": user,
                "loans": user_loans,
                "my_loans_url": f"{settings.SITE_URL}{reverse('my_loans')}",
            },
        )
    return len(by_user)
