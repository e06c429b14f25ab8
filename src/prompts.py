"""System prompt assembly for the auto-responder.

``compose`` is pure string assembly.  Section order is fixed: tenant
persona, document rules, the resolved day, the booking state, then the
retrieved context.  Truncation (if any) is the generation backend's job.
"""

from __future__ import annotations

from src.models import ConversationState, Stage
from src.retrieval import NO_CONTEXT_MARKER

DEFAULT_PERSONA = "You are a helpful WhatsApp assistant."

DOCUMENT_RULES = """You must ONLY answer using the document context.

STRICT RULES:
- Use ONLY the CONTEXT below
- If the answer is not found, say: "I don't have that information in the document"
- No assumptions
- No external knowledge
- Short WhatsApp-style replies, light emojis 😊
- Max 5 lines

LANGUAGE:
- Reply ONLY in English, Hinglish, Hindi or Gujarati
- Match the user's language"""

DAY_TEMPLATE = """## Today
TODAY IS: {day_name}
- NEVER ask the user what day it is.
- Treat {day_name} as fixed unless the user explicitly names a different day.
- Select ONLY the content relevant to {day_name}; ignore other days."""

_SLOT_LABELS = {
    "group_size": "number of people",
    "date": "date",
    "time": "time",
}


def _slot_label(name: str) -> str:
    return _SLOT_LABELS.get(name, name.replace("_", " "))


def render_state(state: ConversationState) -> str:
    """Describe booking progress so the model asks only for what is missing."""
    lines = ["## Booking Progress", f"Stage: {state.stage.value}"]

    if state.activity is None:
        lines.append("No activity chosen yet. If the user wants to book, ask which activity.")
        return "\n".join(lines)

    activity = state.activity
    if state.sub_activity:
        activity = f"{activity} ({state.sub_activity})"
    lines.append(f"Activity: {activity}")

    filled = state.filled_slots()
    if filled:
        lines.append("Already provided (do NOT ask again):")
        lines.extend(f"- {_slot_label(name)}: {value}" for name, value in filled.items())

    if state.stage is Stage.CONFIRM:
        lines.append(
            "All booking details are collected. Summarise them and ask the user to confirm."
        )
    else:
        lines.append("Still missing (ask ONLY for these, one short question):")
        lines.extend(f"- {_slot_label(name)}" for name in state.pending_slots)
    return "\n".join(lines)


def compose(
    tenant_prompt: str | None,
    state: ConversationState,
    day_name: str,
    context_text: str | None,
) -> str:
    """Build the full system prompt for one turn."""
    persona = (tenant_prompt or "").strip() or DEFAULT_PERSONA
    context = (context_text or "").strip() or NO_CONTEXT_MARKER
    sections = [
        persona,
        DOCUMENT_RULES,
        DAY_TEMPLATE.format(day_name=day_name),
        render_state(state),
        f"CONTEXT:\n{context}",
    ]
    return "\n\n".join(sections)
