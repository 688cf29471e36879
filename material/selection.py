"""State and filtering behind the material selector of the activity form."""

from material.models import Material

ALL = "all"
TABS = [(ALL, "All")] + list(Material.Type.choices)
TAB_KEYS = [key for key, _ in TABS]


class SelectionError(ValueError):
    pass


def matches_search(material, text):
    """Case-insensitive substring match on name, code and description."""
    text = (text or "").strip().lower()
    if not text:
        return True
    return any(
        text in (value or "").lower()
        for value in (material.name, material.code, material.description)
    )


def in_tab(material, tab):
    return tab == ALL or material.type == tab


def group_by_type(materials):
    grouped = {key: [] for key, _ in Material.Type.choices}
    for material in materials:
        grouped.setdefault(material.type, []).append(material)
    return grouped


class SelectorState:
    """
    Active type tab plus the search text.

    The search is shared by every tab: switching tabs keeps it and the
    filter applies it inside whichever tab is active.
    """

    def __init__(self, active_tab=ALL, search=""):
        self.active_tab = active_tab if active_tab in TAB_KEYS else ALL
        self.search = (search or "").strip()

    def switch_tab(self, tab):
        if tab not in TAB_KEYS:
            raise SelectionError(f"Unknown material tab {tab!r}")
        self.active_tab = tab

    def set_search(self, text):
        self.search = (text or "").strip()

    def filter(self, materials, tab=None):
        tab = tab or self.active_tab
        return [m for m in materials if in_tab(m, tab) and matches_search(m, self.search)]

    def to_dict(self):
        return {"active_tab": self.active_tab, "search": self.search}

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(active_tab=data.get("active_tab", ALL), search=data.get("search", ""))


class MaterialSelection:
    """
    The material lines picked for an activity.

    ``on_change`` receives the full list of lines after every change so the
    owner of the draft sees the selection live, not only on submit.
    ``held`` maps material ids to units the activity already has on loan,
    which are available again to this same activity.
    """

    def __init__(self, lines=None, on_change=None, held=None):
        self.lines = [
            {"material_id": int(line["material_id"]), "quantity": int(line["quantity"])}
            for line in (lines or [])
        ]
        self.on_change = on_change
        self.held = {int(k): v for k, v in (held or {}).items()}

    def quantity_of(self, material_id):
        return sum(line["quantity"] for line in self.lines if line["material_id"] == material_id)

    def selectable(self, material):
        return max(
            0,
            material.available_quantity
            + self.held.get(material.id, 0)
            - self.quantity_of(material.id),
        )

    def visible(self, materials, state):
        """(material, selectable units) for the active tab, search applied."""
        return [(m, self.selectable(m)) for m in state.filter(materials) if self.selectable(m) > 0]

    def add(self, material, quantity=1):
        if quantity <= 0:
            raise SelectionError("Quantity must be positive")
        if material.state != Material.State.AVAILABLE:
            raise SelectionError(f"{material} is not available")
        if quantity > self.selectable(material):
            raise SelectionError(f"Only {self.selectable(material)} unit(s) of {material} left")
        for line in self.lines:
            if line["material_id"] == material.id:
                line["quantity"] += quantity
                break
        else:
            self.lines.append({"material_id": material.id, "quantity": quantity})
        self._changed()

    def set_quantity(self, material, quantity):
        if quantity <= 0:
            self.remove(material.id)
            return
        current = self.quantity_of(material.id)
        if quantity - current > self.selectable(material):
            raise SelectionError(f"Only {current + self.selectable(material)} unit(s) of {material}")
        self.lines = [line for line in self.lines if line["material_id"] != material.id]
        self.lines.append({"material_id": material.id, "quantity": quantity})
        self._changed()

    def remove(self, material_id):
        self.lines = [line for line in self.lines if line["material_id"] != material_id]
        self._changed()

    def _changed(self):
        if self.on_change is not None:
            self.on_change([dict(line) for line in self.lines])
