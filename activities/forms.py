from django import forms
from django.contrib.auth.models import User
from django.core.exceptions import ValidationError
from django.core.validators import URLValidator

from activities.models import Activity


class NonEmptyListField(forms.Field):
    """
    A list of choice values that must hold at least one item.

    Anything that is not a list (a bare string included) and an empty list
    end up in the same ``required`` error.
    """

    default_error_messages = {
        "required": "Select at least one option.",
        "invalid_choice": "%(value)s is not one of the available choices.",
    }

    def __init__(self, *, choices, **kwargs):
        self.choices = list(choices)
        kwargs.setdefault("widget", forms.CheckboxSelectMultiple(choices=self.choices))
        super().__init__(**kwargs)

    def to_python(self, value):
        if not isinstance(value, (list, tuple)):
            return []
        return [str(v) for v in value]

    def validate(self, value):
        if not value:
            raise ValidationError(self.error_messages["required"], code="required")
        valid = {key for key, _ in self.choices}
        for item in value:
            if item not in valid:
                raise ValidationError(
                    self.error_messages["invalid_choice"],
                    code="invalid_choice",
                    params={"value": item},
                )


class InfoForm(forms.Form):
    name = forms.CharField(max_length=255)
    place = forms.CharField(max_length=255)
    description = forms.CharField(widget=forms.Textarea, required=False)
    types = NonEmptyListField(choices=Activity.Type.choices)
    subtypes = NonEmptyListField(choices=Activity.Subtype.choices)
    difficulty = forms.ChoiceField(
        choices=Activity.Difficulty.choices, initial=Activity.Difficulty.MEDIUM
    )
    start_date = forms.DateField(widget=forms.DateInput(attrs={"type": "date"}))
    end_date = forms.DateField(widget=forms.DateInput(attrs={"type": "date"}))
    municipality_code = forms.CharField(max_length=16, required=False)


class ParticipantsForm(forms.Form):
    responsible_activity = forms.ModelChoiceField(
        queryset=User.objects.filter(is_active=True), required=False
    )
    responsible_material = forms.ModelChoiceField(
        queryset=User.objects.filter(is_active=True), required=False
    )
    participants = forms.ModelMultipleChoiceField(
        queryset=User.objects.filter(is_active=True),
        required=False,
        widget=forms.CheckboxSelectMultiple,
    )

    def __init__(self, *args, creator=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.creator = creator

    def clean(self):
        cleaned_data = super().clean()
        people = list(cleaned_data.get("participants") or [])
        for extra in (
            self.creator,
            cleaned_data.get("responsible_activity"),
            cleaned_data.get("responsible_material"),
        ):
            if extra is not None and extra not in people:
                people.append(extra)
        if not people:
            raise ValidationError("An activity needs at least one participant.")
        cleaned_data["participants"] = people
        return cleaned_data


class MaterialLineForm(forms.Form):
    material_id = forms.IntegerField(widget=forms.HiddenInput)
    quantity = forms.IntegerField(min_value=0)


MaterialLineFormSet = forms.formset_factory(MaterialLineForm, extra=0)


class URLListField(forms.CharField):
    """One URL per line."""

    widget = forms.Textarea(attrs={"rows": 3})

    def to_python(self, value):
        if isinstance(value, (list, tuple)):
            return [str(v).strip() for v in value if str(v).strip()]
        value = super().to_python(value)
        return [line.strip() for line in value.splitlines() if line.strip()]

    def prepare_value(self, value):
        if isinstance(value, (list, tuple)):
            return "\n".join(value)
        return value

    def validate(self, value):
        validator = URLValidator()
        for url in value:
            try:
                validator(url)
            except ValidationError:
                raise ValidationError(f"{url} is not a valid URL.", code="invalid")


class LinksForm(forms.Form):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        for key, label in Activity.LINK_CATEGORIES:
            self.fields[key] = URLListField(label=label, required=False)

    def clean(self):
        cleaned_data = super().clean()
        return {key: cleaned_data.get(key) or [] for key, _ in Activity.LINK_CATEGORIES}
