"""Action-type maps: which platform events feed which funnel field.

WHAT:
    Declarative rules that turn a platform's action list
    ([{"action_type": ..., "value": ...}]) into the canonical funnel
    (click_to_call, email_contacts, booking_step_1..3, reservations,
    reservation_value).

WHY:
    Meta reports the same event under several action types
    (omni_purchase, offsite_conversion.fb_pixel_purchase, purchase).
    Summing them double counts, so each field lists PRIORITY GROUPS:
    the first group with any matching action wins and the rest are ignored.
    Google exposes free-text conversion action names, so its rules match
    lowercase substrings, with exclusions where names overlap
    ("Rezerwacja - krok 1" is a booking step, not a reservation).

    Action types that no rule recognizes are ignored. They are never
    summed into a catch-all bucket.

REFERENCES:
    - adreport/services/metric_normalizer.py (applies these maps)
    - adreport/services/platform_adapters.py (exposes the map per platform)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class ActionRule:
    """How one funnel field is extracted.

    Attributes:
        field: FunnelMetrics attribute name
        groups: Priority-ordered groups of recognized action types (or substrings)
        exclude: Substrings that disqualify an action type for this field
        source: "actions" for counts, "action_values" for monetary values
    """

    field: str
    groups: Tuple[Tuple[str, ...], ...]
    exclude: Tuple[str, ...] = ()
    source: str = "actions"


@dataclass(frozen=True)
class ActionTypeMap:
    """All rules for one platform.

    Attributes:
        platform: "meta" or "google"
        rules: One ActionRule per funnel field
        match: "exact" compares whole action types, "substring" searches names
    """

    platform: str
    rules: Tuple[ActionRule, ...] = ()
    match: str = "exact"

    def matches(self, pattern: str, action_type: str) -> bool:
        if self.match == "substring":
            return pattern in action_type
        return pattern == action_type


# =============================================================================
# META
# =============================================================================

_META_PURCHASE = (("omni_purchase",), ("offsite_conversion.fb_pixel_purchase",))

META_ACTION_MAP = ActionTypeMap(
    platform="meta",
    match="exact",
    rules=(
        ActionRule("click_to_call", groups=(("click_to_call_call_confirm",),)),
        ActionRule("email_contacts", groups=(("lead", "onsite_conversion.lead_grouped"),)),
        # omni_* is Meta's deduplicated view of the pixel event
        ActionRule("booking_step_1", groups=(("omni_search",), ("offsite_conversion.fb_pixel_search",))),
        ActionRule("booking_step_2", groups=(("omni_view_content",), ("offsite_conversion.fb_pixel_view_content",))),
        ActionRule(
            "booking_step_3",
            groups=(("omni_initiated_checkout",), ("offsite_conversion.fb_pixel_initiate_checkout",)),
        ),
        ActionRule("reservations", groups=_META_PURCHASE),
        ActionRule("reservation_value", groups=_META_PURCHASE, source="action_values"),
    ),
)


# =============================================================================
# GOOGLE
# =============================================================================

# Conversion action names are free text, often Polish ("krok" = step)
_GOOGLE_RESERVATION = ("rezerwacja", "reservation", "zakup", "purchase", "complete")
_GOOGLE_NOT_RESERVATION = ("krok", "step", "booking engine", "booking_step")

GOOGLE_ACTION_MAP = ActionTypeMap(
    platform="google",
    match="substring",
    rules=(
        ActionRule("click_to_call", groups=(("phone", "telefon", "call", "dzwonienie"),)),
        ActionRule("email_contacts", groups=(("email", "e-mail", "mail", "contact", "kontakt", "formularz"),)),
        ActionRule(
            "booking_step_1",
            groups=(("step 1", "step1", "krok 1", "1 krok", "pierwszy krok", "pierwszy_krok", "booking_step_1"),),
        ),
        ActionRule(
            "booking_step_2",
            groups=(("step 2", "step2", "krok 2", "2 krok", "drugi krok", "drugi_krok", "booking_step_2"),),
        ),
        ActionRule(
            "booking_step_3",
            groups=(("step 3", "step3", "krok 3", "3 krok", "trzeci krok", "trzeci_krok", "booking_step_3"),),
        ),
        ActionRule("reservations", groups=(_GOOGLE_RESERVATION,), exclude=_GOOGLE_NOT_RESERVATION),
        ActionRule(
            "reservation_value",
            groups=(_GOOGLE_RESERVATION,),
            exclude=_GOOGLE_NOT_RESERVATION,
            source="action_values",
        ),
    ),
)


ACTION_MAPS = {
    "meta": META_ACTION_MAP,
    "google": GOOGLE_ACTION_MAP,
}
