from __future__ import annotations

import re
import unicodedata
from typing import Iterable, List

STOPWORDS = frozenset(
    {
        "dan",
        "atau",
        "yang",
        "untuk",
        "dari",
        "dengan",
        "pada",
        "adalah",
        "akan",
        "bisa",
        "dapat",
    }
)


def normalize_text(text: str) -> str:
    """Purpose: Normalize free-form text for stable matching in the pipeline.
    Inputs/Outputs: Input is a raw string; output is a lowercase ASCII-only string with
        diacritics removed, punctuation replaced by spaces and whitespace collapsed.
    Side Effects / State: None; pure function.
    Dependencies: Uses unicodedata and regex; called by extraction, validation and state checks.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: Lexicon and keyword matching miss punctuated or accented input.
    Testing Notes: "Diabates, kolestrol!!" -> "diabates kolestrol".
    """
    # Lowercase, strip diacritics, then collapse everything non-alphanumeric.
    if not text:
        return ""
    lowered = text.lower()
    decomposed = unicodedata.normalize("NFD", lowered)
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    cleaned = re.sub(r"[^a-z0-9\s]+", " ", stripped)
    return re.sub(r"\s+", " ", cleaned).strip()


def normalize_key(text: str) -> str:
    """Purpose: Produce a compact normalization key without spaces.
    Inputs/Outputs: Input is a raw string; output is normalized string with spaces removed.
    Side Effects / State: None; pure function.
    Dependencies: Calls normalize_text; used for product alias lookups.
    Failure Modes: Returns empty string for falsy input.
    If Removed: "hotto purto" and "hottopurto" stop resolving to the same product.
    Testing Notes: Ensure spaces are removed after normalization.
    """
    # Collapse normalization output into a compact key.
    return normalize_text(text).replace(" ", "")


def contains_phrase(normalized: str, phrase: str) -> bool:
    """Purpose: Check for a phrase on word boundaries in already-normalized text.
    Inputs/Outputs: Inputs are normalized text and a phrase; output is a bool.
    Side Effects / State: None.
    Dependencies: Uses normalize_text on the phrase so callers can pass raw lexicon strings.
    Failure Modes: Empty phrase returns False.
    If Removed: "dm" would match inside unrelated words such as "admin".
    Testing Notes: contains_phrase("sakit maag kambuh", "maag") is True;
        contains_phrase("admin", "dm") is False.
    """
    # Pad both sides so a plain substring test respects word boundaries.
    needle = normalize_text(phrase)
    if not needle:
        return False
    return f" {needle} " in f" {normalized} "


def message_has_any_term(normalized: str, terms: Iterable[str]) -> bool:
    """Return True when any of the phrases appears on word boundaries."""
    return any(contains_phrase(normalized, term) for term in terms)


def levenshtein_distance(left: str, right: str) -> int:
    """Purpose: Compute the edit distance between two strings.
    Inputs/Outputs: Inputs are two strings; output is the minimum number of single-character
        insertions, deletions or substitutions.
    Side Effects / State: None.
    Dependencies: None; used by similarity().
    Failure Modes: None; empty strings are handled (distance equals the other length).
    If Removed: Fuzzy correction of misspelled health terms stops working.
    Testing Notes: levenshtein_distance("diabates", "diabetes") == 1.
    """
    # Classic two-row dynamic programming table.
    if left == right:
        return 0
    if not left:
        return len(right)
    if not right:
        return len(left)
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(left: str, right: str) -> float:
    """Purpose: Normalized edit-distance similarity in [0, 1].
    Inputs/Outputs: Inputs are two strings; output is 1 - distance / max(len_a, len_b).
    Side Effects / State: None.
    Dependencies: levenshtein_distance.
    Failure Modes: Two empty strings are identical (1.0).
    If Removed: Fuzzy matching has no score to compare against its threshold.
    Testing Notes: similarity("kolestrol", "kolesterol") == 0.9.
    """
    longest = max(len(left), len(right))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(left, right) / longest


def extract_keywords(text: str) -> List[str]:
    """Purpose: Tokenize text into relevance keywords.
    Inputs/Outputs: Input is raw text; output is the list of words longer than two
        characters that are not stopwords, in order, duplicates kept.
    Side Effects / State: None.
    Dependencies: normalize_text and STOPWORDS.
    Failure Modes: Returns [] for empty input.
    If Removed: Reply relevance checks have no vocabulary to compare.
    Testing Notes: "Apa manfaat untuk maag?" -> ["apa", "manfaat", "maag"].
    """
    return [word for word in normalize_text(text).split() if len(word) > 2 and word not in STOPWORDS]


def mask_contact_value(value: object) -> str:
    """Purpose: Mask phone-like identifiers for safe logging.
    Inputs/Outputs: Input is any value; output is a masked string with last digits only.
    Side Effects / State: None.
    Dependencies: Uses regex digit extraction.
    Failure Modes: Non-numeric inputs yield a generic mask.
    If Removed: Logs and admin messages may expose customer phone numbers.
    Testing Notes: "6281234567890" -> "***890".
    """
    # Keep only the last digits while hiding the rest.
    if value is None:
        return ""
    digits = re.findall(r"\d", str(value))
    if len(digits) < 4:
        return "***"
    return "***" + "".join(digits[-3:])
