# compatibility.py
import re

from errors import ValidationError
from models import BloodType

A_POS, A_NEG = BloodType.A_POSITIVE, BloodType.A_NEGATIVE
B_POS, B_NEG = BloodType.B_POSITIVE, BloodType.B_NEGATIVE
AB_POS, AB_NEG = BloodType.AB_POSITIVE, BloodType.AB_NEGATIVE
O_POS, O_NEG = BloodType.O_POSITIVE, BloodType.O_NEGATIVE

# donor -> recipients it may give to
DONATES_TO = {
    O_NEG: frozenset(BloodType),
    O_POS: frozenset({O_POS, A_POS, B_POS, AB_POS}),
    A_NEG: frozenset({A_NEG, A_POS, AB_NEG, AB_POS}),
    A_POS: frozenset({A_POS, AB_POS}),
    B_NEG: frozenset({B_NEG, B_POS, AB_NEG, AB_POS}),
    B_POS: frozenset({B_POS, AB_POS}),
    AB_NEG: frozenset({AB_NEG, AB_POS}),
    AB_POS: frozenset({AB_POS}),
}

# recipient -> donors it may receive from
COMPATIBILITY = {
    recipient: frozenset(d for d, targets in DONATES_TO.items() if recipient in targets)
    for recipient in BloodType
}


def canonical_blood(bg):
    if not bg:
        return None
    s = str(bg).upper().strip()
    s = re.sub(r'\s+', '', s)
    s = s.replace('POSITIVE', '+').replace('NEGATIVE', '-')
    s = s.replace('+VE', '+').replace('-VE', '-')
    s = s.replace('POS', '+').replace('NEG', '-')
    return s


def parse_blood_type(value):
    """Coerce ``value`` to a BloodType or raise ValidationError."""
    if isinstance(value, BloodType):
        return value
    canon = canonical_blood(value)
    try:
        return BloodType(canon)
    except ValueError:
        raise ValidationError(f"unknown blood type: {value!r}", field="blood_type") from None


def compatible_donors(recipient):
    return COMPATIBILITY[parse_blood_type(recipient)]


def compatible_recipients(donor):
    return DONATES_TO[parse_blood_type(donor)]


def can_donate_to(donor, recipient):
    return parse_blood_type(recipient) in DONATES_TO[parse_blood_type(donor)]
