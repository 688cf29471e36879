"""
Tabbed create/edit flow for activities.

The draft lives in the user session between requests. ``ActivityWizard``
moves it between tabs, validates each tab with its form and finally writes
the activity, its material lines and the matching loans in one transaction.
"""

import logging

from django.contrib.auth.models import User
from django.db import transaction
from django.db.models import F

from activities.forms import InfoForm, LinksForm, ParticipantsForm
from activities.models import Activity, ActivityMaterial, derive_needs_material
from material.models import Loan
from material.selection import MaterialSelection, SelectorState
from material.services import LoanLedger, MaterialCatalog

INFO = "info"
PARTICIPANTS = "participants"
MATERIAL = "material"
LINKS = "links"

TABS = [
    (INFO, "Information"),
    (PARTICIPANTS, "Participants"),
    (MATERIAL, "Material"),
    (LINKS, "Links"),
]
TAB_KEYS = [key for key, _ in TABS]

FORMS = {
    INFO: InfoForm,
    PARTICIPANTS: ParticipantsForm,
    LINKS: LinksForm,
}

SESSION_PREFIX = "activity_draft"


class ActivityConflict(Exception):
    def __init__(self, activity):
        self.activity = activity
        super().__init__(f"{activity} was modified by someone else, reload it and try again")


class DraftInvalid(Exception):
    def __init__(self, tab, errors=None):
        self.tab = tab
        self.errors = errors or {}
        super().__init__(f"The {tab} tab has errors")


class InvalidDateRange(DraftInvalid):
    def __init__(self):
        super().__init__(INFO, {"end_date": ["The end date cannot be before the start date."]})


class TabLocked(Exception):
    pass


def session_key(activity_id=None):
    return f"{SESSION_PREFIX}:{activity_id or 'new'}"


def plain_data(form_class, querydict, **kwargs):
    """Turn POST data into a JSON-serializable dict, keeping multi-value fields as lists."""
    form = form_class(**kwargs)
    data = {}
    for name, field in form.fields.items():
        if getattr(field.widget, "allow_multiple_selected", False):
            data[name] = querydict.getlist(name)
        elif name in querydict:
            data[name] = querydict.get(name)
    return data


class ActivityDraft:
    def __init__(
        self,
        creator_id,
        activity_id=None,
        version=None,
        data=None,
        completed=None,
        current_tab=INFO,
        selector=None,
    ):
        self.creator_id = creator_id
        self.activity_id = activity_id
        self.version = version
        self.data = {INFO: {}, PARTICIPANTS: {}, MATERIAL: [], LINKS: {}}
        self.data.update(data or {})
        self.completed = [tab for tab in (completed or []) if tab in TAB_KEYS]
        self.current_tab = current_tab if current_tab in TAB_KEYS else INFO
        self.selector = SelectorState.from_dict(selector)

    @property
    def lines(self):
        return self.data[MATERIAL]

    @property
    def responsible_material_id(self):
        return self.data[PARTICIPANTS].get("responsible_material") or None

    @property
    def needs_material(self):
        return derive_needs_material(self.responsible_material_id, self.lines)

    @classmethod
    def from_activity(cls, activity):
        return cls(
            creator_id=activity.creator_id,
            activity_id=str(activity.pk),
            version=activity.version,
            data={
                INFO: {
                    "name": activity.name,
                    "place": activity.place,
                    "description": activity.description,
                    "types": list(activity.types),
                    "subtypes": list(activity.subtypes),
                    "difficulty": activity.difficulty,
                    "start_date": activity.start_date.isoformat(),
                    "end_date": activity.end_date.isoformat(),
                    "municipality_code": activity.municipality_code,
                },
                PARTICIPANTS: {
                    "responsible_activity": activity.responsible_activity_id,
                    "responsible_material": activity.responsible_material_id,
                    "participants": list(activity.participants.values_list("pk", flat=True)),
                },
                MATERIAL: [
                    {"material_id": line.material_id, "quantity": line.quantity}
                    for line in activity.material_lines.all()
                ],
                LINKS: {
                    key: list(activity.links.get(key, [])) for key, _ in Activity.LINK_CATEGORIES
                },
            },
            completed=TAB_KEYS,
        )

    def to_dict(self):
        return {
            "creator_id": self.creator_id,
            "activity_id": self.activity_id,
            "version": self.version,
            "data": self.data,
            "completed": self.completed,
            "current_tab": self.current_tab,
            "selector": self.selector.to_dict(),
        }

    @classmethod
    def from_dict(cls, data):
        return cls(**data)


class ActivityWizard:
    def __init__(self, draft, catalog=None, ledger=None):
        self.draft = draft
        self.catalog = catalog or MaterialCatalog()
        self.ledger = ledger or LoanLedger()
        self.notices = []

    @classmethod
    def start(cls, user, activity=None, **kwargs):
        if activity is None:
            draft = ActivityDraft(creator_id=user.pk)
        else:
            draft = ActivityDraft.from_activity(activity)
        return cls(draft, **kwargs)

    @classmethod
    def load(cls, session, user, activity=None, **kwargs):
        stored = session.get(session_key(activity.pk if activity else None))
        if stored is None:
            return cls.start(user, activity, **kwargs)
        return cls(ActivityDraft.from_dict(stored), **kwargs)

    def store(self, session):
        session[session_key(self.draft.activity_id)] = self.draft.to_dict()

    def discard(self, session):
        session.pop(session_key(self.draft.activity_id), None)

    @property
    def current_tab(self):
        return self.draft.current_tab

    @property
    def needs_material(self):
        return self.draft.needs_material

    @property
    def material_enabled(self):
        return self.draft.responsible_material_id is not None

    def form(self, tab, bound=True):
        form_class = FORMS[tab]
        kwargs = {}
        if tab == PARTICIPANTS:
            kwargs["creator"] = self.creator
        if bound:
            return form_class(self.draft.data[tab], **kwargs)
        return form_class(initial=self.draft.data[tab], **kwargs)

    @property
    def creator(self):
        return User.objects.filter(pk=self.draft.creator_id).first()

    def is_completed(self, tab):
        return tab in self.draft.completed

    def can_select(self, tab):
        index = TAB_KEYS.index(tab)
        return all(self.is_completed(previous) for previous in TAB_KEYS[:index])

    def _mark(self, tab, valid):
        if valid and tab not in self.draft.completed:
            self.draft.completed.append(tab)
        elif not valid and tab in self.draft.completed:
            self.draft.completed.remove(tab)

    def keep(self, tab, data):
        if tab == MATERIAL:
            self.update_materials(data)
        else:
            self.draft.data[tab] = data

    def submit(self, tab, data):
        """
        Store ``data`` for ``tab`` and move to the next tab if it validates.

        Returns the bound form, which carries the field errors when the
        transition is refused. The entered data is kept either way.
        """
        self.keep(tab, data)
        self.draft.current_tab = tab
        form = None if tab == MATERIAL else self.form(tab)
        valid = form is None or form.is_valid()
        self._mark(tab, valid)
        if valid:
            index = TAB_KEYS.index(tab)
            if index + 1 < len(TAB_KEYS):
                self.draft.current_tab = TAB_KEYS[index + 1]
        return form

    def previous(self, tab, data=None):
        if data is not None:
            self.keep(tab, data)
        index = TAB_KEYS.index(tab)
        self.draft.current_tab = TAB_KEYS[max(0, index - 1)]
        return self.draft.current_tab

    def select_tab(self, tab):
        if tab not in TAB_KEYS:
            raise TabLocked(f"Unknown tab {tab!r}")
        if not self.can_select(tab):
            raise TabLocked("Complete the previous tabs first")
        self.draft.current_tab = tab
        return tab

    def held(self):
        """Units the activity being edited already holds on loan, by material."""
        if not self.draft.activity_id:
            return {}
        held = {}
        for loan in Loan.objects.active().filter(activity_id=self.draft.activity_id):
            held[loan.material_id] = held.get(loan.material_id, 0) + loan.quantity
        return held

    def selection(self):
        return MaterialSelection(self.draft.lines, on_change=self.update_materials, held=self.held())

    def update_materials(self, lines):
        lines = [
            {"material_id": int(line["material_id"]), "quantity": int(line["quantity"])}
            for line in lines
            if int(line["quantity"]) > 0
        ]
        self.draft.data[MATERIAL] = lines
        if lines and self.draft.responsible_material_id is None:
            participants = self.draft.data[PARTICIPANTS]
            assignee = participants.get("responsible_activity") or self.draft.creator_id
            participants["responsible_material"] = assignee
            self.notices.append(
                "No one was responsible for the material, "
                "it has been assigned to the person responsible for the activity."
                if participants.get("responsible_activity")
                else "No one was responsible for the material, it has been assigned to the creator."
            )
            logging.info(f"Material responsibility auto-assigned to user {assignee}")

    def _cleaned(self, tab):
        form = self.form(tab)
        if not form.is_valid():
            self._mark(tab, False)
            raise DraftInvalid(tab, form.errors)
        return form.cleaned_data

    def save(self):
        """
        Write the draft. Raises ``DraftInvalid``, ``ActivityConflict`` or a
        ``material.services.LoanError``; nothing is written in those cases.
        """
        info = self._cleaned(INFO)
        people = self._cleaned(PARTICIPANTS)
        links = self._cleaned(LINKS)
        if info["start_date"] > info["end_date"]:
            raise InvalidDateRange()

        with transaction.atomic():
            if self.draft.activity_id:
                activity = Activity.objects.select_for_update().get(pk=self.draft.activity_id)
                if activity.version != self.draft.version:
                    raise ActivityConflict(activity)
                activity.version = F("version") + 1
            else:
                activity = Activity(creator_id=self.draft.creator_id)

            for field in (
                "name",
                "place",
                "description",
                "types",
                "subtypes",
                "difficulty",
                "start_date",
                "end_date",
                "municipality_code",
            ):
                setattr(activity, field, info[field])
            activity.responsible_activity = people["responsible_activity"]
            activity.responsible_material = people["responsible_material"]
            activity.links = links
            activity.save()
            activity.refresh_from_db()
            activity.participants.set(people["participants"])

            materials = self.catalog.in_bulk(line["material_id"] for line in self.draft.lines)
            activity.material_lines.all().delete()
            ActivityMaterial.objects.bulk_create(
                [
                    ActivityMaterial(
                        activity=activity,
                        material=materials[line["material_id"]],
                        quantity=line["quantity"],
                    )
                    for line in self.draft.lines
                    if line["material_id"] in materials
                ]
            )
            self.ledger.reconcile_activity(activity)

        self.draft.activity_id = str(activity.pk)
        self.draft.version = activity.version
        logging.info(f"Activity {activity.pk} saved at version {activity.version}")
        return activity


@transaction.atomic
def cancel_activity(activity, ledger=None):
    """Cancel ``activity`` and release every loan it holds."""
    activity = Activity.objects.select_for_update().get(pk=activity.pk)
    activity.cancelled = True
    activity.version = F("version") + 1
    activity.save()
    activity.refresh_from_db()
    (ledger or LoanLedger()).reconcile_activity(activity)
    return activity
