"""Deterministic booking slot-filling state machine.

``transition(state, text)`` is a pure function: the same inputs always
produce the same output, there is no clock and no randomness.  Rules are
applied in a fixed order against the lowercased message:

  0. reset vocabulary          → default INIT state (dominates everything)
  1. activity keyword          → sets ``activity`` and its required slots
  2. sub-activity keyword      → refines ``sub_activity``
  3. first bare integer        → ``group_size``
  4. ``<h>[:mm] am|pm``        → ``time`` (raw phrase)
  5. weekday / today / literal → ``date`` (raw token)

Filled slots are never overwritten, so re-applying a message to the state
it produced is a no-op for those slots.  Applying it to the *previous*
state again is not, which is why each inbound message must be processed
exactly once.
"""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, ConfigDict

from src.models import ConversationState, SlotValue, Stage

logger = logging.getLogger(__name__)

GROUP_SIZE = "group_size"
DATE = "date"
TIME = "time"

DEFAULT_REQUIRED_SLOTS: tuple[str, ...] = (GROUP_SIZE, DATE, TIME)

RESET_VOCABULARY: tuple[str, ...] = (
    "restart",
    "reset",
    "start over",
    "start again",
    "new booking",
    "shuru se",
)


# ── Activity catalog ────────────────────────────────────────────────


class ActivitySpec(BaseModel):
    """A bookable activity and the details needed before confirming it."""

    model_config = ConfigDict(frozen=True)

    name: str
    keywords: tuple[str, ...]
    sub_activities: dict[str, tuple[str, ...]] = {}
    required_slots: tuple[str, ...] = DEFAULT_REQUIRED_SLOTS


ACTIVITY_CATALOG: tuple[ActivitySpec, ...] = (
    ActivitySpec(
        name="VR Games",
        keywords=("vr", "virtual reality"),
        sub_activities={
            "VR Racing": ("racing", "race"),
            "VR Shooter": ("shooter", "shooting"),
            "VR Horror": ("horror", "zombie"),
        },
    ),
    ActivitySpec(
        name="Bowling",
        keywords=("bowling",),
        sub_activities={
            "Kids Lane": ("kids lane", "kids"),
            "Standard Lane": ("standard lane", "standard"),
        },
    ),
    ActivitySpec(
        name="Laser Tag",
        keywords=("laser tag", "lasertag"),
    ),
    ActivitySpec(
        name="Escape Room",
        keywords=("escape room", "escape game"),
        sub_activities={
            "Haunted Mansion": ("haunted",),
            "Bank Heist": ("heist",),
        },
    ),
)


# ── Extraction patterns ─────────────────────────────────────────────

_MONTH = (
    r"(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?"
    r"|aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)
_WEEKDAY = r"(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday)"

_TIME_RE = re.compile(r"\b\d{1,2}(?::\d{2})?\s*(?:am|pm)\b")
_CLOCK_RE = re.compile(r"\b\d{1,2}:\d{2}\b")
_DATE_PATTERNS: tuple[re.Pattern[str], ...] = (
    # a two-part "5-6" is a range ("5-6 people"), so dashes need a year
    re.compile(r"\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b"),
    re.compile(r"\b\d{1,2}-\d{1,2}-\d{2,4}\b"),
    re.compile(rf"\b\d{{1,2}}(?:st|nd|rd|th)?\s+{_MONTH}\b"),
    re.compile(rf"\b{_MONTH}\s+\d{{1,2}}(?:st|nd|rd|th)?\b"),
    re.compile(rf"\b(?:{_WEEKDAY}|today|tomorrow|aaj|kal)\b"),
)
_INTEGER_RE = re.compile(r"\b\d{1,3}\b")


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(keyword)}\b")


def _earliest(text: str, patterns: list[tuple[re.Pattern[str], str]]) -> str | None:
    """Return the label of the pattern matching earliest in *text*."""
    best: tuple[int, str] | None = None
    for pattern, label in patterns:
        match = pattern.search(text)
        if match and (best is None or match.start() < best[0]):
            best = (match.start(), label)
    return best[1] if best else None


def _mask(text: str, patterns: list[re.Pattern[str]]) -> str:
    """Blank out every match of *patterns*, keeping offsets intact."""
    for pattern in patterns:
        text = pattern.sub(lambda m: " " * len(m.group(0)), text)
    return text


def extract_time(text: str) -> str | None:
    match = _TIME_RE.search(text)
    return match.group(0) if match else None


def extract_date(text: str) -> str | None:
    found: tuple[int, str] | None = None
    for pattern in _DATE_PATTERNS:
        match = pattern.search(text)
        if match and (found is None or match.start() < found[0]):
            found = (match.start(), match.group(0))
    return found[1] if found else None


def extract_group_size(text: str) -> int | None:
    """First bare integer that is not part of a time or date."""
    masked = _mask(text, [_TIME_RE, _CLOCK_RE, *_DATE_PATTERNS])
    for match in _INTEGER_RE.finditer(masked):
        value = int(match.group(0))
        if value > 0:
            return value
    return None


# ── Engine ──────────────────────────────────────────────────────────


class StateEngine:
    """Maps ``(state, user_text)`` to the next ``ConversationState``."""

    def __init__(
        self,
        catalog: tuple[ActivitySpec, ...] = ACTIVITY_CATALOG,
        reset_vocabulary: tuple[str, ...] = RESET_VOCABULARY,
    ) -> None:
        self._catalog = {spec.name: spec for spec in catalog}
        self._reset_vocabulary = tuple(word.lower() for word in reset_vocabulary)
        self._activity_patterns = [
            (_keyword_pattern(kw), spec.name) for spec in catalog for kw in spec.keywords
        ]
        self._sub_patterns = {
            spec.name: [
                (_keyword_pattern(kw), sub_name)
                for sub_name, keywords in spec.sub_activities.items()
                for kw in keywords
            ]
            for spec in catalog
        }

    # ── Queries ──────────────────────────────────────────────────────

    def is_reset(self, user_text: str) -> bool:
        text = (user_text or "").lower()
        return any(word in text for word in self._reset_vocabulary)

    def required_slots(self, activity: str | None, fallback: list[str] | None = None) -> list[str]:
        """Required slots for *activity*, in the order they should be asked."""
        if activity is None:
            return []
        spec = self._catalog.get(activity)
        if spec is None:
            # Activity unknown to this catalog (e.g. renamed since the state
            # was stored): keep whatever the stored state was still waiting for.
            return list(fallback or [])
        return list(spec.required_slots)

    # ── Transition ───────────────────────────────────────────────────

    def transition(self, state: ConversationState, user_text: str) -> ConversationState:
        text = (user_text or "").lower()

        if self.is_reset(text):
            return ConversationState()

        activity = state.activity
        sub_activity = state.sub_activity
        slots: dict[str, SlotValue] = dict(state.slots)

        if activity is None:
            activity = _earliest(text, self._activity_patterns)

        if activity is not None:
            sub_activity = _earliest(text, self._sub_patterns.get(activity, [])) or sub_activity

        if slots.get(GROUP_SIZE) is None:
            group_size = extract_group_size(text)
            if group_size is not None:
                slots[GROUP_SIZE] = group_size

        if slots.get(TIME) is None:
            time_phrase = extract_time(text)
            if time_phrase is not None:
                slots[TIME] = time_phrase

        if slots.get(DATE) is None:
            date_token = extract_date(text)
            if date_token is not None:
                slots[DATE] = date_token

        required = self.required_slots(activity, fallback=state.pending_slots)
        pending = [name for name in required if slots.get(name) is None]

        new_state = ConversationState(
            stage=self._stage_for(activity, sub_activity, pending),
            activity=activity,
            sub_activity=sub_activity,
            slots=slots,
            pending_slots=pending,
        )
        if new_state != state:
            logger.debug("State transition: %s -> %s", state.summary(), new_state.summary())
        return new_state

    @staticmethod
    def _stage_for(activity: str | None, sub_activity: str | None, pending: list[str]) -> Stage:
        if activity is None:
            return Stage.INIT
        if not pending:
            return Stage.CONFIRM
        if sub_activity is not None:
            return Stage.DETAILS
        return Stage.ACTIVITY_SELECTED


_default_engine = StateEngine()


def transition(state: ConversationState, user_text: str) -> ConversationState:
    """Apply *user_text* to *state* using the default activity catalog."""
    return _default_engine.transition(state, user_text)
