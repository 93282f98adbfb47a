"""Screening for traveller messages sent to the AI guide."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Optional

import bleach

MAX_MESSAGE_LENGTH = 1000

LEET_TABLE = str.maketrans({
    "@": "a",
    "4": "a",
    "3": "e",
    "1": "i",
    "!": "i",
    "0": "o",
    "$": "s",
    "5": "s",
    "7": "t",
})


@dataclass
class FilterDecision:
    """Represents a blocked match detected by the filter."""

    category: str
    severity: str
    label: str
    match: str
    rule_id: str

    def to_dict(self) -> dict:
        return asdict(self)


class ContentFilter:
    """Blocks guide prompts that try to steer the model, share contact details, or abuse."""

    def __init__(self) -> None:
        self._rules = self._build_rules()
        self._phone_pattern = re.compile(r"(?:\+?\d[\s().-]*){7,}\d")
        self._email_pattern = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")

    def _build_rules(self) -> list[dict]:
        rules: list[dict] = [
            {
                "id": "self-harm",
                "label": "Self-harm references",
                "category": "self_harm",
                "severity": "critical",
                "patterns": [
                    r"\bkill\s+(?:myself|yourself)\b",
                    r"\b(?:commit|planning)\s+suicide\b",
                    r"\bself[-\s]?harm\b",
                    r"\bsuicidal\b",
                ],
            },
            {
                "id": "prompt-override",
                "label": "Attempts to override the guide's instructions",
                "category": "prompt_injection",
                "severity": "high",
                "patterns": [
                    r"\bignore\s+(?:all\s+|the\s+|your\s+)?(?:previous|prior|above)\s+instructions\b",
                    r"\b(?:reveal|print|show)\s+(?:me\s+)?(?:your|the)\s+system\s+prompt\b",
                    r"\byou\s+are\s+no\s+longer\s+(?:a\s+)?guide\b",
                    r"\bdeveloper\s+mode\b",
                ],
            },
            {
                "id": "vandalism",
                "label": "Damaging heritage sites",
                "category": "heritage_damage",
                "severity": "high",
                "patterns": [
                    r"\b(?:carve|scratch|engrave|spray)\b[^.]{0,30}\b(?:pyramid|temple|wall|statue|column|sphinx)s?\b",
                    r"\b(?:steal|smuggle|take\s+home)\b[^.]{0,30}\b(?:artefact|artifact|stone|relic|antiquit(?:y|ies))s?\b",
                ],
            },
            {
                "id": "explicit-profanity",
                "label": "Severe profanity",
                "category": "profanity",
                "severity": "high",
                "patterns": [
                    r"\bf+u+c+k+\b",
                    r"\bmotherf+u+c+ker\b",
                    r"\bshit+\b",
                    r"\bbitch(?:es)?\b",
                    r"\basshole\b",
                    r"\bcunt\b",
                ],
            },
        ]
        for rule in rules:
            rule["compiled"] = [re.compile(pattern, re.IGNORECASE) for pattern in rule["patterns"]]
        return rules

    @staticmethod
    def sanitize(value: str) -> str:
        """Strip markup and collapse whitespace; the result is what gets scanned and sent."""
        if not value:
            return ""
        cleaned = bleach.clean(value, tags=[], attributes={}, strip=True)
        cleaned = re.sub(r"\s+", " ", cleaned).strip()
        return cleaned[:MAX_MESSAGE_LENGTH]

    @staticmethod
    def _normalize(value: str) -> str:
        lowered = value.lower().translate(LEET_TABLE)
        return re.sub(r"\s+", " ", lowered)

    def _detect_contact(self, value: str) -> Optional[FilterDecision]:
        email = self._email_pattern.search(value)
        if email:
            return FilterDecision(
                category="contact_sharing",
                severity="medium",
                label="Email addresses are not sent to the guide.",
                match=email.group(0),
                rule_id="email-address",
            )
        phone = self._phone_pattern.search(value)
        if phone and len(re.sub(r"\D", "", phone.group(0))) >= 7:
            return FilterDecision(
                category="contact_sharing",
                severity="medium",
                label="Phone numbers are not sent to the guide.",
                match=phone.group(0).strip(),
                rule_id="phone-number",
            )
        return None

    def scan(self, value: str) -> Optional[FilterDecision]:
        """Return a FilterDecision if the text violates policy."""
        if not value:
            return None

        # Contact details are checked on the raw text; leet folding turns digits into letters.
        contact = self._detect_contact(value)
        if contact:
            return contact

        normalized = self._normalize(value)
        for rule in self._rules:
            for pattern in rule["compiled"]:
                found = pattern.search(normalized)
                if found:
                    return FilterDecision(
                        category=rule["category"],
                        severity=rule["severity"],
                        label=rule["label"],
                        match=found.group(0).strip(),
                        rule_id=rule["id"],
                    )
        return None
