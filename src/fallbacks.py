"""User-facing fallback replies and lightweight message classification.

Users never see a technical error.  When generation yields nothing usable
(or the pipeline hits an unexpected error) they get one of the friendly
strings below, in the language the conversation is being held in.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from enum import Enum


class Language(str, Enum):
    ENGLISH = "en"
    HINGLISH = "hinglish"
    HINDI = "hi"
    GUJARATI = "gu"


class FallbackKind(str, Enum):
    EMPTY_GENERATION = "empty_generation"
    INTERNAL_ERROR = "internal_error"


_FALLBACKS: dict[FallbackKind, dict[Language, str]] = {
    FallbackKind.EMPTY_GENERATION: {
        Language.ENGLISH: "Sorry, I don't have exact information on that right now 😊",
        Language.HINGLISH: "Abhi ispe exact info available nahi hai 😊",
        Language.HINDI: "माफ़ कीजिए, अभी इस बारे में सटीक जानकारी उपलब्ध नहीं है 😊",
        Language.GUJARATI: "માફ કરશો, અત્યારે આ વિશે ચોક્કસ માહિતી ઉપલબ્ધ નથી 😊",
    },
    FallbackKind.INTERNAL_ERROR: {
        Language.ENGLISH: "Something went wrong on our side 😅 Please try again in a little while.",
        Language.HINGLISH: "Thoda sa issue aa gaya 😅 Please thodi der baad try karein.",
        Language.HINDI: "थोड़ी समस्या आ गई 😅 कृपया थोड़ी देर बाद फिर से कोशिश करें।",
        Language.GUJARATI: "થોડી સમસ્યા આવી 😅 કૃપા કરીને થોડી વાર પછી ફરી પ્રયાસ કરો.",
    },
}

_DEVANAGARI_RE = re.compile(r"[\u0900-\u097F]")
_GUJARATI_RE = re.compile(r"[\u0A80-\u0AFF]")

# Romanised Hindi words that rarely appear in English sentences.
_HINGLISH_MARKERS = frozenset({
    "aaj", "kal", "hai", "hain", "kya", "nahi", "nahin", "kaise", "kitne",
    "kitna", "kab", "mujhe", "hum", "humein", "karna", "karein", "chahiye",
    "bhai", "haan", "accha", "acha", "theek", "thik", "batao",
})

SMALL_TALK = frozenset({
    "hi", "hello", "hey", "ok", "okay", "thanks", "thank you", "bye",
})

_WORD_RE = re.compile(r"[a-z]+")


def detect_language(text: str) -> Language:
    """Best-effort guess of the language a message is written in."""
    if not text:
        return Language.ENGLISH
    if _GUJARATI_RE.search(text):
        return Language.GUJARATI
    if _DEVANAGARI_RE.search(text):
        return Language.HINDI
    words = set(_WORD_RE.findall(text.lower()))
    if words & _HINGLISH_MARKERS:
        return Language.HINGLISH
    return Language.ENGLISH


# English guesses from fewer words than this ("5pm", "ok 4") say nothing
# about the conversation's language.
MIN_ENGLISH_WORDS = 3


def _decisive_language(text: str) -> Language | None:
    language = detect_language(text)
    if language is not Language.ENGLISH:
        return language
    if len(_WORD_RE.findall((text or "").lower())) >= MIN_ENGLISH_WORDS:
        return language
    return None


def detect_conversation_language(message: str, earlier_messages: Iterable[str] = ()) -> Language:
    """Language of the conversation as of *message*.

    Short messages that carry no language signal of their own inherit the
    language of the most recent earlier user message that does.
    *earlier_messages* is ordered oldest first.
    """
    for text in (message, *reversed(list(earlier_messages))):
        language = _decisive_language(text)
        if language is not None:
            return language
    return Language.ENGLISH


def fallback_message(kind: FallbackKind, language: Language = Language.ENGLISH) -> str:
    messages = _FALLBACKS[kind]
    return messages.get(language, messages[Language.ENGLISH])


def is_small_talk(text: str) -> bool:
    """True for bare greetings/acknowledgements that need no document lookup."""
    return (text or "").strip().lower().rstrip("!.") in SMALL_TALK
