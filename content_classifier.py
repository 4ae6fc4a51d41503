"""
Heuristic classifier that turns raw practice web copy into structured fields.

The search provider returns a few thousand characters of page text. This
module pulls services, treatments, specializations, contact details and a
location out of it with regular expressions, and guesses the practice type.
Accuracy is best-effort; the pipeline treats whatever comes back as optional
signals layered on top of the URL-derived baseline.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern, Tuple

MAX_SERVICES = 10
MAX_TREATMENTS = 15
MAX_SPECIALIZATIONS = 8

SERVICE_PATTERNS: List[Pattern[str]] = [
    re.compile(r"(?:we offer|our services|services include|we provide)[\s\S]*?(?:\n\n|\.|!)", re.IGNORECASE),
    re.compile(
        r"(?:cosmetic|aesthetic|medical|dental|surgical|therapy|treatment|consultation)[\w ]*?"
        r"(?:services?|procedures?|treatments?)",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:botox|filler|laser|surgery|consultation|examination|procedure|treatment|therapy)[\w ]{0,20}",
        re.IGNORECASE,
    ),
]

TREATMENT_PATTERNS: List[Pattern[str]] = [
    re.compile(r"botox|dermal fillers?|laser therapy|chemical peels?|microneedling|coolsculpting", re.IGNORECASE),
    re.compile(r"facelift|rhinoplasty|breast augmentation|liposuction|tummy tuck", re.IGNORECASE),
    re.compile(r"dental implants?|teeth whitening|orthodontics|root canal|crown", re.IGNORECASE),
    re.compile(r"physical therapy|massage|acupuncture|chiropractic|physiotherapy", re.IGNORECASE),
    re.compile(r"consultation|examination|assessment|screening|diagnosis", re.IGNORECASE),
]

SPECIALIZATION_PATTERNS: List[Pattern[str]] = [
    re.compile(r"(?:speciali[sz]es? in|speciali[sz]ation|expert in|focus on)[\s\S]*?(?:\n|\.|,)", re.IGNORECASE),
    re.compile(
        r"(?:cosmetic|aesthetic|medical|dental|surgical|orthopedic|dermatology|cardiology|neurology)[\w ]*?"
        r"(?:surgery|medicine|care|practice)",
        re.IGNORECASE,
    ),
]

LOCATION_PATTERNS: List[Pattern[str]] = [
    re.compile(
        r"\d+[\w ]+(?:street|st|avenue|ave|road|rd|drive|dr|lane|ln|boulevard|blvd)\b[\w ,]*\d{5}",
        re.IGNORECASE,
    ),
    re.compile(r"(?:located in|based in|visit us at|address:?)\s*([^.\n]{10,60})", re.IGNORECASE),
    re.compile(r"[A-Z][a-z]+,\s*[A-Z]{2}\s*\d{5}"),
]

PHONE_PATTERN = re.compile(r"\+?[\d\s\-()]{10,}")
EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

# First matching keyword group wins.
PRACTICE_TYPE_KEYWORDS: List[Tuple[str, Tuple[str, ...]]] = [
    ("cosmetic", ("cosmetic", "aesthetic")),
    ("dental", ("dental", "dentist")),
    ("surgical", ("surgery", "surgical")),
    ("therapy", ("therapy", "rehabilitation")),
    ("dermatology", ("dermatology", "skin")),
]
DEFAULT_PRACTICE_TYPE = "general-healthcare"


@dataclass(frozen=True)
class ClassifiedContent:
    """Fields the classifier could recover from a block of text."""

    services: Tuple[str, ...] = ()
    treatments: Tuple[str, ...] = ()
    specializations: Tuple[str, ...] = ()
    phone: str = ""
    email: str = ""
    location: str = ""
    practice_type: str = DEFAULT_PRACTICE_TYPE
    content_length: int = 0


def _unique(items: Iterable[str], limit: int) -> Tuple[str, ...]:
    seen: List[str] = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
        if len(seen) >= limit:
            break
    return tuple(seen)


class ContentClassifier:
    """Regex-driven extraction of practice details from page text."""

    def classify(self, text: str) -> ClassifiedContent:
        text = text or ""
        if not text.strip():
            return ClassifiedContent()
        phone, email = self.extract_contact(text)
        return ClassifiedContent(
            services=self.extract_services(text),
            treatments=self.extract_treatments(text),
            specializations=self.extract_specializations(text),
            phone=phone,
            email=email,
            location=self.extract_location(text) or "",
            practice_type=self.determine_practice_type(text),
            content_length=len(text),
        )

    @staticmethod
    def extract_services(text: str) -> Tuple[str, ...]:
        found: List[str] = []
        for pattern in SERVICE_PATTERNS:
            for match in pattern.finditer(text):
                service = re.sub(r"[^\w\s-]", "", match.group(0).strip())[:50].strip()
                if len(service) > 3:
                    found.append(service)
        return _unique(found, MAX_SERVICES)

    @staticmethod
    def extract_treatments(text: str) -> Tuple[str, ...]:
        found: List[str] = []
        for pattern in TREATMENT_PATTERNS:
            for match in pattern.finditer(text):
                treatment = match.group(0).strip().lower()
                if len(treatment) > 3:
                    found.append(treatment)
        return _unique(found, MAX_TREATMENTS)

    @staticmethod
    def extract_specializations(text: str) -> Tuple[str, ...]:
        found: List[str] = []
        for pattern in SPECIALIZATION_PATTERNS:
            for match in pattern.finditer(text):
                spec = re.sub(r"[^\w\s-]", "", match.group(0).strip())[:40].strip()
                if len(spec) > 5:
                    found.append(spec)
        return _unique(found, MAX_SPECIALIZATIONS)

    @staticmethod
    def extract_contact(text: str) -> Tuple[str, str]:
        phone = ""
        for match in PHONE_PATTERN.finditer(text):
            digits = re.sub(r"[^\d+]", "", match.group(0))
            if sum(ch.isdigit() for ch in digits) >= 10:
                phone = digits
                break
        email_match = EMAIL_PATTERN.search(text)
        return phone, email_match.group(0) if email_match else ""

    @staticmethod
    def extract_location(text: str) -> Optional[str]:
        for pattern in LOCATION_PATTERNS:
            match = pattern.search(text)
            if match:
                return match.group(0).strip()[:100]
        return None

    @staticmethod
    def determine_practice_type(text: str) -> str:
        lowered = text.lower()
        for practice_type, keywords in PRACTICE_TYPE_KEYWORDS:
            if any(keyword in lowered for keyword in keywords):
                return practice_type
        return DEFAULT_PRACTICE_TYPE
